"""
roster/services/rank_migration_service.py
Re-rank every ranked user after the catalog changes.

Strategies:
- recalculate: highest rank whose threshold is met by the user's
  attendance-since-last-rank counter (ranks without a threshold always match)
- grandfather: keep everyone where they are
- map: explicit old rank id -> new rank id pairs

Preview never writes. Apply performs every change in one transaction.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config import feature_flags
from roster.config.rank_policy import RankPolicy
from roster.errors import ErrorCode, ForbiddenError, ValidationError
from roster.orm.rank import Rank, UserRank
from roster.orm.rank_history import RankTrigger
from roster.orm.user import User
from roster.services.rank_catalog_service import RankCatalogService
from roster.services.rank_rules import highest_rank_for_attendance
from roster.services.rank_state_service import RankStateService
from roster.services.transaction import atomic

logger = logging.getLogger(__name__)


class MigrationStrategy(str, Enum):
    RECALCULATE = "recalculate"
    GRANDFATHER = "grandfather"
    MAP = "map"


class ChangeType(str, Enum):
    PROMOTION = "promotion"
    DEMOTION = "demotion"
    UNCHANGED = "unchanged"


class PlannedChange(NamedTuple):
    user_id: int
    username: Optional[str]
    current_rank: Rank
    new_rank: Rank
    attendance_since_last_rank: int

    @property
    def change_type(self) -> ChangeType:
        if self.new_rank.order_index > self.current_rank.order_index:
            return ChangeType.PROMOTION
        if self.new_rank.order_index < self.current_rank.order_index:
            return ChangeType.DEMOTION
        return ChangeType.UNCHANGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username or "Unknown",
            "currentRankName": self.current_rank.name,
            "newRankName": self.new_rank.name,
            "changeType": self.change_type.value,
            "attendanceSinceLastRank": self.attendance_since_last_rank,
        }


class RankMigrationService:

    @staticmethod
    def _parse_strategy(strategy: str) -> MigrationStrategy:
        try:
            return MigrationStrategy(strategy)
        except ValueError:
            raise ValidationError(
                f"Invalid strategy. Must be one of: {', '.join(s.value for s in MigrationStrategy)}",
                details={"strategy": strategy},
            )

    @staticmethod
    def _mapping_table(
        strategy: MigrationStrategy,
        mappings: Optional[Sequence[Dict[str, int]]],
        catalog: Dict[int, Rank],
    ) -> Dict[int, Rank]:
        if strategy != MigrationStrategy.MAP:
            return {}
        if not mappings:
            raise ValidationError("Rank mappings are required for map strategy", code=ErrorCode.MISSING_FIELD)

        table: Dict[int, Rank] = {}
        for mapping in mappings:
            old_id, new_id = mapping["oldRankId"], mapping["newRankId"]
            if old_id in table:
                raise ValidationError(f"Rank {old_id} is mapped more than once")
            if new_id not in catalog:
                raise ValidationError(f"Mapping target rank {new_id} does not exist", code=ErrorCode.RANK_NOT_FOUND)
            table[old_id] = catalog[new_id]
        return table

    @classmethod
    async def _plan(
        cls,
        db: AsyncSession,
        strategy: str,
        mappings: Optional[Sequence[Dict[str, int]]],
        lock: bool = False,
    ) -> Tuple[MigrationStrategy, List[PlannedChange]]:
        if not feature_flags.FEATURE_RANK_MIGRATION:
            raise ForbiddenError("Rank migration is disabled", code=ErrorCode.FEATURE_DISABLED)

        parsed = cls._parse_strategy(strategy)
        ranks = await RankCatalogService.list_ranks(db)
        catalog = {rank.id: rank for rank in ranks}
        mapping_table = cls._mapping_table(parsed, mappings, catalog)

        query = (
            select(UserRank, User.username)
            .join(User, User.id == UserRank.user_id)
            .where(UserRank.current_rank_id.isnot(None))
            .order_by(UserRank.user_id)
        )
        if lock:
            query = query.with_for_update(of=UserRank)
        rows = (await db.execute(query)).all()

        planned: List[PlannedChange] = []
        for state, username in rows:
            current = catalog.get(state.current_rank_id)
            if current is None:
                continue

            if parsed == MigrationStrategy.RECALCULATE:
                new_rank = highest_rank_for_attendance(ranks, state.attendance_since_last_rank) or current
            elif parsed == MigrationStrategy.MAP:
                new_rank = mapping_table.get(current.id, current)
            else:
                new_rank = current

            planned.append(PlannedChange(
                user_id=state.user_id,
                username=username,
                current_rank=current,
                new_rank=new_rank,
                attendance_since_last_rank=state.attendance_since_last_rank,
            ))
        return parsed, planned

    @staticmethod
    def _summarize(planned: List[PlannedChange]) -> Dict[str, Any]:
        kinds = [change.change_type for change in planned]
        return {
            "totalUsers": len(planned),
            "promoted": kinds.count(ChangeType.PROMOTION),
            "demoted": kinds.count(ChangeType.DEMOTION),
            "unchanged": kinds.count(ChangeType.UNCHANGED),
            "changes": [change.to_dict() for change in planned],
        }

    @classmethod
    async def preview(
        cls,
        db: AsyncSession,
        strategy: str,
        mappings: Optional[Sequence[Dict[str, int]]] = None,
    ) -> Dict[str, Any]:
        _, planned = await cls._plan(db, strategy, mappings)
        return cls._summarize(planned)

    @classmethod
    async def apply(
        cls,
        db: AsyncSession,
        strategy: str,
        mappings: Optional[Sequence[Dict[str, int]]] = None,
        actor_user_id: Optional[int] = None,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Apply the migration atomically. Every changed user goes through the
        same bookkeeping as a manual assignment and gets a history entry
        noting the strategy.
        """
        async with atomic(db, "rank migration"):
            parsed, planned = await cls._plan(db, strategy, mappings, lock=True)
            note = f"Rank migration ({parsed.value})"
            for change in planned:
                if change.new_rank.id == change.current_rank.id:
                    continue
                await RankStateService.apply_rank_in_transaction(
                    db,
                    change.user_id,
                    change.new_rank,
                    triggered_by=RankTrigger.ADMIN,
                    actor_user_id=actor_user_id,
                    note=note,
                    policy=policy,
                )

        summary = cls._summarize(planned)
        summary["totalProcessed"] = summary["totalUsers"]
        logger.info(
            f"Rank migration '{parsed.value}' applied by {actor_user_id}: "
            f"{summary['promoted']} promoted, {summary['demoted']} demoted, {summary['unchanged']} unchanged"
        )
        return summary
