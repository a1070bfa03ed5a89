"""
roster/routes/ranks.py
Rank catalog, transition requirements, migration and the auto-rankup sweep.
"""
import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from roster.database import get_db
from roster.limiter import limiter
from roster.orm.user import User
from roster.rbac import require_admin
from roster.schemas.ranks import (
    RankCreateRequest,
    RankMigrationRequest,
    RankReorderRequest,
    RankUpdateRequest,
    TransitionTrainingRequest,
)
from roster.services.promotion_service import PromotionService
from roster.services.rank_catalog_service import RankCatalogService
from roster.services.rank_migration_service import RankMigrationService
from roster.services.transition_requirement_service import TransitionRequirementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ranks", tags=["Ranks"])


# =============================================================================
# Catalog
# =============================================================================

@router.get("")
async def list_ranks(db: AsyncSession = Depends(get_db)):
    """Rank catalog ordered by position, lowest first."""
    return {"ranks": await RankCatalogService.list_catalog(db)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_rank(
    body: RankCreateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rank = await RankCatalogService.create_rank(
        db,
        name=body.name,
        abbreviation=body.abbreviation,
        order_index=body.order_index,
        attendance_required_since_last_rank=body.attendance_required_since_last_rank,
        auto_rankup_enabled=body.auto_rankup_enabled,
        actor_user_id=admin.id,
    )
    return {"rank": rank.to_dict()}


@router.put("/reorder")
async def reorder_ranks(
    body: RankReorderRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ranks = await RankCatalogService.reorder(
        db, [{"id": r.id, "orderIndex": r.order_index} for r in body.ranks],
        actor_user_id=admin.id,
    )
    return {"success": True, "ranks": [rank.to_dict() for rank in ranks]}


@router.post("/auto-rankup")
@limiter.limit("5/minute")
async def auto_rankup(
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    logger.info(f"Auto rankup sweep requested by {admin.id}")
    return await PromotionService.auto_rankup(db)


# =============================================================================
# Migration
# =============================================================================

@router.post("/migrate/preview")
async def preview_migration(
    body: RankMigrationRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await RankMigrationService.preview(db, body.strategy, body.mappings())


@router.post("/migrate/apply")
async def apply_migration(
    body: RankMigrationRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await RankMigrationService.apply(db, body.strategy, body.mappings(), actor_user_id=admin.id)
    return {"success": True, **result}


@router.put("/{rank_id}")
async def update_rank(
    rank_id: int,
    body: RankUpdateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rank = await RankCatalogService.update_rank(db, rank_id, body.changes(), actor_user_id=admin.id)
    return {"rank": rank.to_dict()}


@router.delete("/{rank_id}")
async def delete_rank(
    rank_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await RankCatalogService.delete_rank(db, rank_id, actor_user_id=admin.id)
    return {"success": True}


# =============================================================================
# Transition requirements
# =============================================================================

@router.get("/{rank_id}/transitions")
async def list_transition_trainings(
    rank_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await TransitionRequirementService.list_required(db, rank_id)


@router.post("/{rank_id}/transitions")
async def add_transition_training(
    rank_id: int,
    body: TransitionTrainingRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await TransitionRequirementService.add_training(
        db, rank_id, body.training_id, actor_user_id=admin.id
    )


@router.delete("/{rank_id}/transitions/{training_id}")
async def remove_transition_training(
    rank_id: int,
    training_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await TransitionRequirementService.remove_training(
        db, rank_id, training_id, actor_user_id=admin.id
    )
