"""
roster/services/directory.py
Read-only adapters over the subsystems the rank core consumes:
the user directory, the attendance ledger and the training directory.
"""
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config.rank_policy import RankPolicy, rank_policy
from roster.orm.attendance import Attendance, AttendanceStatus, Orbat
from roster.orm.training import UserTraining
from roster.orm.user import User
from roster.services.rank_rules import completed_training_ids

logger = logging.getLogger(__name__)


class TrainingRecord(NamedTuple):
    training_id: int
    needs_retraining: bool
    is_hidden: bool


class UserDirectory:

    @staticmethod
    async def exists(db: AsyncSession, user_id: int) -> bool:
        result = await db.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def lookup(db: AsyncSession, user_id: int) -> Optional[Dict]:
        result = await db.execute(select(User.id, User.username).where(User.id == user_id))
        row = result.first()
        if row is None:
            return None
        return {"id": row.id, "username": row.username}

    @staticmethod
    async def missing_ids(db: AsyncSession, user_ids: Iterable[int]) -> List[int]:
        """Return the ids from user_ids that are not present in the directory."""
        wanted = set(user_ids)
        if not wanted:
            return []
        result = await db.execute(select(User.id).where(User.id.in_(wanted)))
        found = set(result.scalars().all())
        return sorted(wanted - found)


class AttendanceLedger:

    @staticmethod
    def qualifying_statuses(policy: RankPolicy) -> List[AttendanceStatus]:
        statuses = []
        for value in sorted(policy.qualifying_statuses):
            try:
                statuses.append(AttendanceStatus(value))
            except ValueError:
                logger.warning(f"Ignoring unknown qualifying attendance status '{value}'")
        return statuses

    @classmethod
    def _qualifying_query(cls, policy: RankPolicy):
        query = (
            select(Attendance.user_id, func.count(Attendance.id))
            .join(Orbat, Orbat.id == Attendance.orbat_id)
            .where(Attendance.status.in_(cls.qualifying_statuses(policy)))
        )
        if policy.main_ops_only:
            query = query.where(Orbat.is_main_op.is_(True))
        return query

    @classmethod
    async def count_qualifying(
        cls,
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
    ) -> int:
        """All-time qualifying attendance count. Zero for users without rows."""
        policy = policy or rank_policy
        query = cls._qualifying_query(policy).where(Attendance.user_id == user_id).group_by(Attendance.user_id)
        result = await db.execute(query)
        row = result.first()
        return int(row[1]) if row else 0

    @classmethod
    async def count_qualifying_many(
        cls,
        db: AsyncSession,
        user_ids: Iterable[int],
        policy: Optional[RankPolicy] = None,
    ) -> Dict[int, int]:
        policy = policy or rank_policy
        ids = list(set(user_ids))
        counts = {user_id: 0 for user_id in ids}
        if not ids:
            return counts
        query = cls._qualifying_query(policy).where(Attendance.user_id.in_(ids)).group_by(Attendance.user_id)
        result = await db.execute(query)
        for user_id, count in result.all():
            counts[user_id] = int(count)
        return counts


class TrainingDirectory:

    @staticmethod
    async def completion_records(db: AsyncSession, user_id: int) -> List[TrainingRecord]:
        result = await db.execute(
            select(UserTraining.training_id, UserTraining.needs_retraining, UserTraining.is_hidden)
            .where(UserTraining.user_id == user_id)
        )
        return [TrainingRecord(*row) for row in result.all()]

    @classmethod
    async def completed_trainings(
        cls,
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
    ) -> Set[int]:
        records = await cls.completion_records(db, user_id)
        return completed_training_ids(records, policy or rank_policy)
