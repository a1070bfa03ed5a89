"""
roster/services/promotion_service.py
Promotion eligibility and the proposal queue.

Proposal status flow: PENDING -> APPROVED | DECLINED (both terminal).

Concurrency: a decision locks the proposal row and then flips the status with
a conditional UPDATE ... WHERE status = 'pending'. When two deciders race,
exactly one update matches; the other sees rowcount 0 and gets a Conflict,
and no second history entry is written.

Approval also requires the user to still hold the proposal's starting rank
and not be retired; a stale proposal can only be declined.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config import feature_flags
from roster.config.rank_policy import RankPolicy
from roster.errors import (
    APIError, ConflictError, ErrorCode, ForbiddenError, NotFoundError, ValidationError
)
from roster.orm.base import utcnow
from roster.orm.promotion import PromotionProposal, ProposalStatus
from roster.orm.rank import Rank, UserRank
from roster.orm.rank_history import RankOutcome, RankTrigger
from roster.orm.user import User
from roster.services.attendance_service import AttendanceAggregator, AttendanceSnapshot
from roster.services.directory import TrainingDirectory, UserDirectory
from roster.services.rank_catalog_service import RankCatalogService
from roster.services.rank_history_service import RankHistoryService
from roster.services.rank_rules import UnmetKind, UnmetRequirement, evaluate_transition
from roster.services.rank_state_service import RankStateService
from roster.services.transaction import atomic
from roster.services.transition_requirement_service import TransitionRequirementService

logger = logging.getLogger(__name__)


class EligibilityReason(str, Enum):
    ELIGIBLE_AUTO = "eligible_auto"
    ELIGIBLE_MANUAL = "eligible_manual"
    INELIGIBLE_NO_CURRENT_RANK = "ineligible_no_current_rank"
    INELIGIBLE_RETIRED = "ineligible_retired"
    INELIGIBLE_INTERVIEW = "ineligible_interview"
    INELIGIBLE_NO_NEXT_RANK = "ineligible_no_next_rank"
    INELIGIBLE_ATTENDANCE = "ineligible_attendance"
    INELIGIBLE_TRAINING = "ineligible_training"


def _rank_display(rank: Optional[Rank]) -> Optional[Dict[str, Any]]:
    if rank is None:
        return None
    return {
        "id": rank.id,
        "name": rank.name,
        "abbreviation": rank.abbreviation,
        "orderIndex": rank.order_index,
        "autoRankupEnabled": rank.auto_rankup_enabled,
        "attendanceRequiredSinceLastRank": rank.attendance_required_since_last_rank,
    }


@dataclass
class EligibilityResult:
    reason: EligibilityReason
    current_rank: Optional[Rank] = None
    next_rank: Optional[Rank] = None
    snapshot: Optional[AttendanceSnapshot] = None
    since_last_rank: int = 0
    unmet: List[UnmetRequirement] = field(default_factory=list)
    proposal_id: Optional[int] = None

    @property
    def eligible(self) -> bool:
        return self.reason in (EligibilityReason.ELIGIBLE_AUTO, EligibilityReason.ELIGIBLE_MANUAL)

    @property
    def missing_training_ids(self) -> List[int]:
        return [u.training_id for u in self.unmet if u.kind == UnmetKind.TRAINING]

    def to_dict(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        return {
            "eligible": self.eligible,
            "reason": self.reason.value,
            "currentRank": _rank_display(self.current_rank),
            "nextRank": _rank_display(self.next_rank),
            "attendance": {
                "currentAttendance": snapshot.total if snapshot else 0,
                "attendanceSinceLastRank": snapshot.since_last_rank if snapshot else self.since_last_rank,
                "requiredAttendance": (
                    self.next_rank.attendance_required_since_last_rank if self.next_rank else None
                ),
                "delta": snapshot.delta if snapshot else 0,
            },
            "missingTrainingIds": self.missing_training_ids,
            "unmet": [u.to_dict() for u in self.unmet],
            "proposalId": self.proposal_id,
        }


class PromotionService:
    """
    Eligibility evaluation, proposal creation and admin / bot decisions.
    """

    VALID_TRANSITIONS = {
        ProposalStatus.PENDING: [ProposalStatus.APPROVED, ProposalStatus.DECLINED],
        ProposalStatus.APPROVED: [],  # Terminal state
        ProposalStatus.DECLINED: [],  # Terminal state
    }

    @staticmethod
    def _is_valid_transition(current: ProposalStatus, new: ProposalStatus) -> bool:
        return new in PromotionService.VALID_TRANSITIONS.get(current, [])

    # =========================================================================
    # Eligibility
    # =========================================================================

    @staticmethod
    async def _pending_proposal_id(db: AsyncSession, user_id: int, next_rank_id: int) -> Optional[int]:
        result = await db.execute(
            select(PromotionProposal.id)
            .where(
                PromotionProposal.user_id == user_id,
                PromotionProposal.next_rank_id == next_rank_id,
                PromotionProposal.status == ProposalStatus.PENDING,
            )
            .order_by(PromotionProposal.created_at.asc(), PromotionProposal.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @classmethod
    async def _evaluate(
        cls,
        db: AsyncSession,
        user_id: int,
        state: Optional[UserRank],
        policy: Optional[RankPolicy] = None,
    ) -> EligibilityResult:
        if state is None or state.current_rank_id is None:
            return EligibilityResult(reason=EligibilityReason.INELIGIBLE_NO_CURRENT_RANK)

        current_rank = await db.get(Rank, state.current_rank_id)
        if current_rank is None:
            return EligibilityResult(reason=EligibilityReason.INELIGIBLE_NO_CURRENT_RANK)

        since = state.attendance_since_last_rank
        if state.retired:
            return EligibilityResult(
                reason=EligibilityReason.INELIGIBLE_RETIRED, current_rank=current_rank, since_last_rank=since
            )
        if not state.interview_done:
            return EligibilityResult(
                reason=EligibilityReason.INELIGIBLE_INTERVIEW, current_rank=current_rank, since_last_rank=since
            )

        next_rank = await RankCatalogService.next_rank(db, current_rank)
        if next_rank is None:
            return EligibilityResult(
                reason=EligibilityReason.INELIGIBLE_NO_NEXT_RANK, current_rank=current_rank, since_last_rank=since
            )

        snapshot = await AttendanceAggregator.snapshot(db, user_id, policy, state=state)
        required = await TransitionRequirementService.required_training_ids(db, next_rank.id)
        completed = await TrainingDirectory.completed_trainings(db, user_id, policy) if required else set()

        decision = evaluate_transition(
            snapshot.delta,
            next_rank.attendance_required_since_last_rank,
            required,
            completed,
        )

        result = EligibilityResult(
            reason=EligibilityReason.ELIGIBLE_MANUAL,
            current_rank=current_rank,
            next_rank=next_rank,
            snapshot=snapshot,
            since_last_rank=since,
            unmet=list(decision.unmet),
        )
        if not decision.attendance_met:
            result.reason = EligibilityReason.INELIGIBLE_ATTENDANCE
        elif not decision.eligible:
            result.reason = EligibilityReason.INELIGIBLE_TRAINING
        else:
            if next_rank.auto_rankup_enabled:
                result.reason = EligibilityReason.ELIGIBLE_AUTO
            result.proposal_id = await cls._pending_proposal_id(db, user_id, next_rank.id)
        return result

    @classmethod
    async def check_eligibility(
        cls,
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
    ) -> EligibilityResult:
        await RankStateService.ensure_user_exists(db, user_id)
        state = (await db.execute(
            select(UserRank).where(UserRank.user_id == user_id)
        )).scalar_one_or_none()
        return await cls._evaluate(db, user_id, state, policy)

    # =========================================================================
    # Proposals
    # =========================================================================

    @classmethod
    async def propose(
        cls,
        db: AsyncSession,
        user_id: int,
        actor: User,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Raise a promotion for a user.

        Auto-enabled next ranks are applied immediately. Otherwise the
        existing pending proposal is returned or a new one is queued.
        """
        is_self_request = actor.id == user_id and not actor.is_admin
        if is_self_request and not feature_flags.FEATURE_SELF_PROMOTION_REQUESTS:
            raise ForbiddenError("Self promotion requests are disabled", code=ErrorCode.FEATURE_DISABLED)
        if not actor.is_admin and actor.id != user_id:
            raise ForbiddenError("You may only request your own promotion", code=ErrorCode.OWNERSHIP_VIOLATION)

        async with atomic(db, "promotion proposal"):
            await RankStateService.ensure_user_exists(db, user_id)
            state = await RankStateService.lock_state(db, user_id)
            eligibility = await cls._evaluate(db, user_id, state, policy)

            if not eligibility.eligible:
                logger.warning(f"Promotion refused for user {user_id}: {eligibility.reason.value}")
                raise ValidationError(
                    f"User is not eligible for promotion: {eligibility.reason.value}",
                    code=ErrorCode.NOT_ELIGIBLE,
                    details=eligibility.to_dict(),
                )

            if eligibility.reason == EligibilityReason.ELIGIBLE_AUTO:
                trigger = RankTrigger.SELF if is_self_request else RankTrigger.AUTO
                state, entry = await RankStateService.apply_rank_in_transaction(
                    db,
                    user_id,
                    eligibility.next_rank,
                    triggered_by=trigger,
                    actor_user_id=actor.id,
                    policy=policy,
                )
                outcome = {
                    "success": True,
                    "autoRanked": True,
                    "nextRank": _rank_display(eligibility.next_rank),
                    "history": entry.to_dict(),
                }
            elif eligibility.proposal_id is not None:
                existing = await db.get(PromotionProposal, eligibility.proposal_id)
                outcome = {"success": True, "proposal": existing.to_dict(), "alreadyPending": True}
            else:
                proposal = PromotionProposal(
                    user_id=user_id,
                    current_rank_id=eligibility.current_rank.id,
                    next_rank_id=eligibility.next_rank.id,
                    status=ProposalStatus.PENDING,
                    attendance_total_at_proposal=eligibility.snapshot.total,
                    attendance_delta_since_last_rank=eligibility.snapshot.delta,
                )
                db.add(proposal)
                await db.flush()
                outcome = {"success": True, "proposal": proposal.to_dict(), "alreadyPending": False}

        if outcome.get("autoRanked"):
            logger.info(f"User {user_id} auto-promoted to {eligibility.next_rank.name} (actor={actor.id})")
        elif not outcome["alreadyPending"]:
            logger.info(
                f"Promotion proposal {outcome['proposal']['id']} queued for user {user_id} "
                f"-> {eligibility.next_rank.name}"
            )
        return outcome

    @staticmethod
    async def list_pending(db: AsyncSession, oldest_first: bool = False) -> List[Dict[str, Any]]:
        """Pending proposals joined with user and rank display data."""
        order = PromotionProposal.created_at.asc() if oldest_first else PromotionProposal.created_at.desc()
        id_order = PromotionProposal.id.asc() if oldest_first else PromotionProposal.id.desc()
        result = await db.execute(
            select(PromotionProposal, User)
            .join(User, User.id == PromotionProposal.user_id)
            .where(PromotionProposal.status == ProposalStatus.PENDING)
            .order_by(order, id_order)
        )
        rows = result.all()

        rank_ids = {p.current_rank_id for p, _ in rows} | {p.next_rank_id for p, _ in rows}
        ranks = {}
        if rank_ids:
            rank_result = await db.execute(select(Rank).where(Rank.id.in_(rank_ids)))
            ranks = {rank.id: rank for rank in rank_result.scalars().all()}

        payload = []
        for proposal, user in rows:
            data = proposal.to_dict()
            data.update({
                "username": user.username,
                "email": user.email,
                "currentRank": _rank_display(ranks.get(proposal.current_rank_id)),
                "nextRank": _rank_display(ranks.get(proposal.next_rank_id)),
            })
            payload.append(data)
        return payload

    # =========================================================================
    # Decisions
    # =========================================================================

    @classmethod
    async def _decide(
        cls,
        db: AsyncSession,
        proposal_id: int,
        new_status: ProposalStatus,
        *,
        actor_user_id: Optional[int] = None,
        external_actor_id: Optional[str] = None,
        decline_reason: Optional[str] = None,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        async with atomic(db, f"proposal {new_status.value}"):
            proposal = (await db.execute(
                select(PromotionProposal)
                .where(PromotionProposal.id == proposal_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )).scalar_one_or_none()
            if not proposal:
                raise NotFoundError("Promotion proposal", proposal_id, code=ErrorCode.PROPOSAL_NOT_FOUND)

            if not cls._is_valid_transition(proposal.status, new_status):
                raise ConflictError(
                    f"Proposal is already {proposal.status.value}",
                    code=ErrorCode.PROPOSAL_ALREADY_DECIDED,
                    details={"status": proposal.status.value},
                )

            if new_status == ProposalStatus.APPROVED:
                state = await RankStateService.lock_state(db, proposal.user_id)
                if state is None or state.current_rank_id != proposal.current_rank_id or state.retired:
                    raise ConflictError(
                        "Proposal no longer matches the user's rank state",
                        code=ErrorCode.PROPOSAL_STALE,
                        details={
                            "proposalRankId": proposal.current_rank_id,
                            "currentRankId": state.current_rank_id if state else None,
                            "retired": bool(state and state.retired),
                        },
                    )

            decided = await db.execute(
                update(PromotionProposal)
                .where(
                    PromotionProposal.id == proposal_id,
                    PromotionProposal.status == ProposalStatus.PENDING,
                )
                .values(
                    status=new_status,
                    decided_at=utcnow(),
                    decided_by_user_id=actor_user_id,
                    decline_reason=decline_reason,
                )
                .execution_options(synchronize_session=False)
            )
            if decided.rowcount == 0:
                raise ConflictError(
                    "Proposal was decided by someone else",
                    code=ErrorCode.PROPOSAL_ALREADY_DECIDED,
                )

            next_rank = await db.get(Rank, proposal.next_rank_id)
            if next_rank is None:
                raise NotFoundError("Rank", proposal.next_rank_id, code=ErrorCode.RANK_NOT_FOUND)

            if new_status == ProposalStatus.APPROVED:
                _, entry = await RankStateService.apply_rank_in_transaction(
                    db,
                    proposal.user_id,
                    next_rank,
                    triggered_by=RankTrigger.ADMIN,
                    actor_user_id=actor_user_id,
                    external_actor_id=external_actor_id,
                    policy=policy,
                )
            else:
                current_rank = await db.get(Rank, proposal.current_rank_id)
                snapshot = await AttendanceAggregator.snapshot(db, proposal.user_id, policy)
                entry = RankHistoryService.append(
                    db,
                    user_id=proposal.user_id,
                    previous_rank_name=current_rank.name if current_rank else None,
                    new_rank_name=next_rank.name,
                    attendance_total=snapshot.total,
                    attendance_delta=snapshot.delta,
                    triggered_by=RankTrigger.ADMIN,
                    actor_user_id=actor_user_id,
                    external_actor_id=external_actor_id,
                    outcome=RankOutcome.DECLINED,
                    decline_reason=decline_reason,
                )
                await db.flush()

            refreshed = (await db.execute(
                select(PromotionProposal)
                .where(PromotionProposal.id == proposal_id)
                .execution_options(populate_existing=True)
            )).scalar_one()

        logger.info(
            f"Proposal {proposal_id} {new_status.value} "
            f"(actor={actor_user_id}, external={external_actor_id})"
        )
        return {"success": True, "proposal": refreshed.to_dict(), "history": entry.to_dict()}

    @classmethod
    async def approve(
        cls,
        db: AsyncSession,
        proposal_id: int,
        actor_user_id: Optional[int] = None,
        external_actor_id: Optional[str] = None,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        return await cls._decide(
            db,
            proposal_id,
            ProposalStatus.APPROVED,
            actor_user_id=actor_user_id,
            external_actor_id=external_actor_id,
            policy=policy,
        )

    @classmethod
    async def decline(
        cls,
        db: AsyncSession,
        proposal_id: int,
        reason: Optional[str] = None,
        actor_user_id: Optional[int] = None,
        external_actor_id: Optional[str] = None,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        return await cls._decide(
            db,
            proposal_id,
            ProposalStatus.DECLINED,
            actor_user_id=actor_user_id,
            external_actor_id=external_actor_id,
            decline_reason=reason or None,
            policy=policy,
        )

    # =========================================================================
    # Auto-rankup sweep
    # =========================================================================

    @classmethod
    async def auto_rankup(cls, db: AsyncSession, policy: Optional[RankPolicy] = None) -> Dict[str, Any]:
        """
        Promote every user whose next rank is auto-enabled and whose
        requirements are met. Each user is promoted in its own transaction,
        so one failure does not undo the others.
        """
        if not feature_flags.FEATURE_AUTO_RANKUP:
            raise ForbiddenError("Auto rankup is disabled", code=ErrorCode.FEATURE_DISABLED)

        user_ids = (await db.execute(
            select(UserRank.user_id).order_by(UserRank.user_id)
        )).scalars().all()
        await db.commit()

        promoted: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        skipped = 0

        skip_reasons = {
            EligibilityReason.INELIGIBLE_RETIRED,
            EligibilityReason.INELIGIBLE_INTERVIEW,
            EligibilityReason.INELIGIBLE_NO_NEXT_RANK,
        }

        for user_id in user_ids:
            user = await UserDirectory.lookup(db, user_id)
            username = user["username"] if user else None
            try:
                async with atomic(db, "auto rankup"):
                    state = await RankStateService.lock_state(db, user_id)
                    eligibility = await cls._evaluate(db, user_id, state, policy)

                    if eligibility.reason == EligibilityReason.ELIGIBLE_AUTO:
                        await RankStateService.apply_rank_in_transaction(
                            db,
                            user_id,
                            eligibility.next_rank,
                            triggered_by=RankTrigger.AUTO,
                            policy=policy,
                        )
            except (APIError, SQLAlchemyError):
                logger.exception(f"Auto rankup failed for user {user_id}")
                failed.append({"userId": user_id, "username": username, "reason": "Internal error during promotion"})
                continue

            if eligibility.reason == EligibilityReason.ELIGIBLE_AUTO:
                current, nxt = eligibility.current_rank, eligibility.next_rank
                promoted.append({
                    "userId": user_id,
                    "username": username,
                    "oldRank": f"{current.abbreviation} - {current.name}",
                    "newRank": f"{nxt.abbreviation} - {nxt.name}",
                })
            elif eligibility.reason in skip_reasons:
                skipped += 1
            else:
                failed.append({"userId": user_id, "username": username, "reason": cls._failure_text(eligibility)})

        logger.info(f"Auto rankup: {len(promoted)} promoted, {len(failed)} not promoted, {skipped} skipped")
        return {
            "promoted": promoted,
            "failed": failed,
            "promotedCount": len(promoted),
            "failedCount": len(failed),
            "skippedCount": skipped,
        }

    @staticmethod
    def _failure_text(eligibility: EligibilityResult) -> str:
        reason = eligibility.reason
        if reason == EligibilityReason.INELIGIBLE_NO_CURRENT_RANK:
            return "No current rank assigned"
        if reason == EligibilityReason.ELIGIBLE_MANUAL:
            return "Next rank requires manual approval"
        if reason == EligibilityReason.INELIGIBLE_ATTENDANCE:
            shortfall = next(u.shortfall for u in eligibility.unmet if u.kind == UnmetKind.ATTENDANCE)
            return f"Need {shortfall} more attendance ops"
        if reason == EligibilityReason.INELIGIBLE_TRAINING:
            missing = ", ".join(str(t) for t in eligibility.missing_training_ids)
            return f"Missing required trainings: {missing}"
        return reason.value
