"""
roster/routes/users.py
Per-user rank state, eligibility and history, plus admin bulk operations.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from roster.database import get_db
from roster.orm.user import User
from roster.rbac import get_current_user, require_admin, require_self_or_admin
from roster.schemas.ranks import AssignRankRequest, BulkAssignRankRequest, BulkRetireToggleRequest
from roster.services.promotion_service import PromotionService
from roster.services.rank_history_service import RankHistoryService
from roster.services.rank_state_service import RankStateService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["User Ranks"])
admin_router = APIRouter(prefix="/api/admin/users", tags=["Admin Users"])


# =============================================================================
# Per-user
# =============================================================================

@router.get("/{user_id}/rank")
async def get_user_rank(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.get_summary(db, user_id)


@router.get("/{user_id}/rank/eligibility")
async def get_user_eligibility(
    user_id: int,
    current_user: User = Depends(require_self_or_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await PromotionService.check_eligibility(db, user_id)
    return result.to_dict()


@router.post("/{user_id}/rank/assign")
async def assign_user_rank(
    user_id: int,
    body: AssignRankRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.assign_rank(db, user_id, body.rank_id, actor_user_id=admin.id)


@router.post("/{user_id}/retired/toggle")
async def toggle_user_retired(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.toggle_retired(db, user_id, actor_user_id=admin.id)


@router.post("/{user_id}/interview/toggle")
async def toggle_user_interview(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.toggle_interview_done(db, user_id, actor_user_id=admin.id)


@router.get("/{user_id}/rank-history")
async def get_rank_history(
    user_id: int,
    page: int = Query(1, ge=1),
    current_user: User = Depends(require_self_or_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankHistoryService.page(db, user_id, page=page)


# =============================================================================
# Admin bulk operations
# =============================================================================

@admin_router.post("/bulk-rank-assign")
async def bulk_rank_assign(
    body: BulkAssignRankRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.bulk_assign_rank(db, body.user_ids, body.rank_id, actor_user_id=admin.id)


@admin_router.post("/bulk-retire-toggle")
async def bulk_retire_toggle(
    body: BulkRetireToggleRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.bulk_toggle_retired(db, body.user_ids, actor_user_id=admin.id)


@admin_router.get("/unranked")
async def unranked_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    interview: str = Query("all"),
    retired: str = Query("all"),
    sort: str = Query("username"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankStateService.list_unranked(
        db, page=page, limit=limit, interview=interview, retired=retired, sort=sort
    )
