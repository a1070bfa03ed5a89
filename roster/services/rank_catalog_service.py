"""
roster/services/rank_catalog_service.py
Rank catalog: ordered rank definitions and their maintenance.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from roster.errors import ConflictError, ErrorCode, NotFoundError, ValidationError
from roster.orm.promotion import PromotionProposal
from roster.orm.rank import Rank, RankTransitionRequirement, UserRank
from roster.services.transaction import atomic

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "abbreviation",
    "order_index",
    "attendance_required_since_last_rank",
    "auto_rankup_enabled",
)


class RankCatalogService:

    @staticmethod
    async def get_rank(db: AsyncSession, rank_id: int, lock: bool = False) -> Rank:
        query = select(Rank).where(Rank.id == rank_id)
        if lock:
            query = query.with_for_update()
        rank = (await db.execute(query)).scalar_one_or_none()
        if not rank:
            raise NotFoundError("Rank", rank_id, code=ErrorCode.RANK_NOT_FOUND)
        return rank

    @staticmethod
    async def list_ranks(db: AsyncSession) -> List[Rank]:
        result = await db.execute(select(Rank).order_by(Rank.order_index.asc()))
        return list(result.scalars().all())

    @staticmethod
    async def assigned_counts(db: AsyncSession) -> Dict[int, int]:
        result = await db.execute(
            select(UserRank.current_rank_id, func.count(UserRank.id))
            .where(UserRank.current_rank_id.isnot(None))
            .group_by(UserRank.current_rank_id)
        )
        return {rank_id: int(count) for rank_id, count in result.all()}

    @classmethod
    async def list_catalog(cls, db: AsyncSession) -> List[Dict[str, Any]]:
        ranks = await cls.list_ranks(db)
        counts = await cls.assigned_counts(db)
        return [rank.to_dict(assigned_count=counts.get(rank.id, 0)) for rank in ranks]

    @staticmethod
    async def next_rank(db: AsyncSession, current: Rank) -> Optional[Rank]:
        """Lowest rank positioned strictly above `current`."""
        result = await db.execute(
            select(Rank)
            .where(Rank.order_index > current.order_index)
            .order_by(Rank.order_index.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _ensure_position_free(db: AsyncSession, order_index: int, exclude_id: Optional[int] = None) -> None:
        query = select(Rank.id).where(Rank.order_index == order_index)
        if exclude_id is not None:
            query = query.where(Rank.id != exclude_id)
        if (await db.execute(query)).first() is not None:
            raise ConflictError(
                f"Another rank already occupies position {order_index}",
                code=ErrorCode.DUPLICATE_POSITION,
                details={"orderIndex": order_index},
            )

    @classmethod
    async def create_rank(
        cls,
        db: AsyncSession,
        name: str,
        abbreviation: str,
        order_index: int,
        attendance_required_since_last_rank: Optional[int] = None,
        auto_rankup_enabled: bool = False,
        actor_user_id: Optional[int] = None,
    ) -> Rank:
        async with atomic(db, "rank creation"):
            await cls._ensure_position_free(db, order_index)
            rank = Rank(
                name=name,
                abbreviation=abbreviation,
                order_index=order_index,
                attendance_required_since_last_rank=attendance_required_since_last_rank,
                auto_rankup_enabled=auto_rankup_enabled,
            )
            db.add(rank)
            await db.flush()

        logger.info(f"Rank created: {rank.name} at position {rank.order_index} by {actor_user_id}")
        return rank

    @classmethod
    async def update_rank(
        cls,
        db: AsyncSession,
        rank_id: int,
        changes: Dict[str, Any],
        actor_user_id: Optional[int] = None,
    ) -> Rank:
        """
        Partial update. Only keys present in `changes` are written, so an
        explicit None for the attendance threshold clears it.
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown rank fields: {', '.join(sorted(unknown))}")

        async with atomic(db, "rank update"):
            rank = await cls.get_rank(db, rank_id, lock=True)
            if "order_index" in changes and changes["order_index"] != rank.order_index:
                await cls._ensure_position_free(db, changes["order_index"], exclude_id=rank.id)
            for field, value in changes.items():
                setattr(rank, field, value)
            await db.flush()

        logger.info(f"Rank {rank_id} updated by {actor_user_id}: {sorted(changes)}")
        return rank

    @classmethod
    async def delete_rank(cls, db: AsyncSession, rank_id: int, actor_user_id: Optional[int] = None) -> None:
        """Refused with Conflict while any user currently holds the rank."""
        async with atomic(db, "rank deletion"):
            rank = await cls.get_rank(db, rank_id, lock=True)
            assigned = (await db.execute(
                select(func.count(UserRank.id)).where(UserRank.current_rank_id == rank_id)
            )).scalar_one()
            if assigned > 0:
                logger.warning(f"Refused to delete rank {rank_id} for {actor_user_id}: {assigned} users assigned")
                raise ConflictError(
                    "Cannot delete rank: users are currently assigned",
                    code=ErrorCode.RANK_IN_USE,
                    details={"assignedCount": assigned},
                )

            requirement = (await db.execute(
                select(RankTransitionRequirement).where(RankTransitionRequirement.target_rank_id == rank_id)
            )).scalar_one_or_none()
            if requirement is not None:
                await db.delete(requirement)

            await db.execute(
                delete(PromotionProposal).where(
                    or_(
                        PromotionProposal.current_rank_id == rank_id,
                        PromotionProposal.next_rank_id == rank_id,
                    )
                )
            )
            await db.delete(rank)

        logger.info(f"Rank {rank_id} ({rank.name}) deleted by {actor_user_id}")

    @classmethod
    async def reorder(
        cls,
        db: AsyncSession,
        positions: Sequence[Dict[str, int]],
        actor_user_id: Optional[int] = None,
    ) -> List[Rank]:
        """
        Apply a batch of {id, orderIndex} moves in one transaction.

        Moved ranks are first parked on negative positions so no intermediate
        state ever holds two ranks on the same position.
        """
        if not positions:
            raise ValidationError("ranks must be a non-empty list", code=ErrorCode.MISSING_FIELD)

        ids = [p["id"] for p in positions]
        targets = {p["id"]: p["orderIndex"] for p in positions}
        if len(set(ids)) != len(ids):
            raise ValidationError("Each rank may appear only once in a reorder")
        if len(set(targets.values())) != len(targets):
            raise ValidationError("Target positions must be unique", code=ErrorCode.INVALID_INPUT)
        if any(value < 0 for value in targets.values()):
            raise ValidationError("Positions must be non-negative")

        async with atomic(db, "rank reorder"):
            locked = await db.execute(select(Rank).order_by(Rank.order_index).with_for_update())
            catalog = {rank.id: rank for rank in locked.scalars().all()}

            missing = [rank_id for rank_id in ids if rank_id not in catalog]
            if missing:
                raise NotFoundError("Rank", ", ".join(str(m) for m in missing), code=ErrorCode.RANK_NOT_FOUND)

            final = {rank_id: rank.order_index for rank_id, rank in catalog.items()}
            final.update(targets)
            if len(set(final.values())) != len(final):
                raise ConflictError(
                    "Reorder would leave two ranks on the same position",
                    code=ErrorCode.DUPLICATE_POSITION,
                )

            for offset, rank_id in enumerate(ids, start=1):
                await db.execute(update(Rank).where(Rank.id == rank_id).values(order_index=-offset))
            for rank_id in ids:
                await db.execute(update(Rank).where(Rank.id == rank_id).values(order_index=targets[rank_id]))

            refreshed = await db.execute(
                select(Rank).order_by(Rank.order_index).execution_options(populate_existing=True)
            )
            ranks = list(refreshed.scalars().all())

        logger.info(f"Reordered {len(ids)} ranks by {actor_user_id}")
        return ranks
