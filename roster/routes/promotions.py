"""
roster/routes/promotions.py
Promotion proposal queue for admins and for the external bot.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from roster.database import get_db
from roster.limiter import limiter
from roster.orm.user import User
from roster.rbac import ensure_self_or_admin, get_current_user, require_admin, verify_bot_token
from roster.schemas.ranks import (
    BotApproveRequest,
    BotDeclineRequest,
    DeclinePromotionRequest,
    ProposePromotionRequest,
)
from roster.services.promotion_service import PromotionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ranks/promotions", tags=["Promotions"])
bot_router = APIRouter(prefix="/api/ranks/bot/promotions", tags=["Promotions (bot)"])


# =============================================================================
# Admin / member routes
# =============================================================================

@router.get("/pending")
async def pending_promotions(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"proposals": await PromotionService.list_pending(db)}


@router.post("/propose")
async def propose_promotion(
    body: ProposePromotionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admins may propose for anyone; members only for themselves."""
    ensure_self_or_admin(current_user, body.user_id)
    return await PromotionService.propose(db, body.user_id, current_user)


@router.post("/{proposal_id}/approve")
async def approve_promotion(
    proposal_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await PromotionService.approve(db, proposal_id, actor_user_id=admin.id)


@router.post("/{proposal_id}/decline")
async def decline_promotion(
    proposal_id: int,
    body: Optional[DeclinePromotionRequest] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await PromotionService.decline(
        db,
        proposal_id,
        reason=body.decline_reason if body else None,
        actor_user_id=admin.id,
    )


# =============================================================================
# Bot routes (static bearer token)
# =============================================================================

@bot_router.get("")
@limiter.limit("60/minute")
async def bot_pending_promotions(
    request: Request,
    bot: str = Depends(verify_bot_token),
    db: AsyncSession = Depends(get_db),
):
    return await PromotionService.list_pending(db, oldest_first=True)


@bot_router.post("")
@limiter.limit("30/minute")
async def bot_approve_promotion(
    request: Request,
    body: BotApproveRequest,
    bot: str = Depends(verify_bot_token),
    db: AsyncSession = Depends(get_db),
):
    return await PromotionService.approve(
        db, body.proposal_id, external_actor_id=body.external_actor_id
    )


@bot_router.post("/{proposal_id}/decline")
@limiter.limit("30/minute")
async def bot_decline_promotion(
    request: Request,
    proposal_id: int,
    body: Optional[BotDeclineRequest] = None,
    bot: str = Depends(verify_bot_token),
    db: AsyncSession = Depends(get_db),
):
    return await PromotionService.decline(
        db,
        proposal_id,
        reason=body.reason if body else None,
        external_actor_id=body.external_actor_id if body else None,
    )
