"""
roster/services/attendance_service.py
Attendance aggregator: qualifying totals and the since-last-rank delta.

Read-only. A user with no attendance rows counts zero; existence of the user
is the caller's concern.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config.rank_policy import RankPolicy
from roster.orm.rank import UserRank
from roster.services.directory import AttendanceLedger
from roster.services.rank_rules import attendance_delta


@dataclass(frozen=True)
class AttendanceSnapshot:
    total: int
    since_last_rank: int
    delta: int

    def to_dict(self) -> dict:
        return {
            "currentAttendance": self.total,
            "attendanceSinceLastRank": self.since_last_rank,
            "delta": self.delta,
        }


class AttendanceAggregator:

    @staticmethod
    async def qualifying_total(
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
    ) -> int:
        return await AttendanceLedger.count_qualifying(db, user_id, policy)

    @staticmethod
    async def qualifying_totals(
        db: AsyncSession,
        user_ids: Iterable[int],
        policy: Optional[RankPolicy] = None,
    ) -> Dict[int, int]:
        return await AttendanceLedger.count_qualifying_many(db, user_ids, policy)

    @classmethod
    async def snapshot(
        cls,
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
        state: Optional[UserRank] = None,
    ) -> AttendanceSnapshot:
        """
        Qualifying total plus the delta against the count recorded at the last
        rank change. Pass `state` when the caller already holds the row.
        """
        if state is None:
            result = await db.execute(
                select(UserRank.attendance_since_last_rank).where(UserRank.user_id == user_id)
            )
            since = result.scalar_one_or_none() or 0
        else:
            since = state.attendance_since_last_rank or 0

        total = await cls.qualifying_total(db, user_id, policy)
        return AttendanceSnapshot(total=total, since_last_rank=since, delta=attendance_delta(total, since))
