"""
roster/services/rank_history_service.py
Rank history ledger: append-only writes and newest-first paging.

There is deliberately no update or delete operation here.
"""
import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config.rank_policy import rank_policy
from roster.errors import ErrorCode, NotFoundError
from roster.orm.rank_history import RankHistoryEntry, RankOutcome, RankTrigger
from roster.services.directory import UserDirectory

logger = logging.getLogger(__name__)


class RankHistoryService:

    @staticmethod
    def append(
        db: AsyncSession,
        *,
        user_id: int,
        previous_rank_name: Optional[str],
        new_rank_name: str,
        attendance_total: int,
        attendance_delta: int,
        triggered_by: RankTrigger,
        actor_user_id: Optional[int] = None,
        external_actor_id: Optional[str] = None,
        outcome: RankOutcome = RankOutcome.APPROVED,
        decline_reason: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RankHistoryEntry:
        """
        Stage a history entry on the caller's session.
        The caller owns the transaction so the entry commits together with the
        rank state change it records.
        """
        entry = RankHistoryEntry(
            user_id=user_id,
            previous_rank_name=previous_rank_name,
            new_rank_name=new_rank_name,
            attendance_total_at_change=attendance_total,
            attendance_delta_since_last_rank=attendance_delta,
            triggered_by=triggered_by,
            triggered_by_user_id=actor_user_id,
            triggered_by_external_id=external_actor_id,
            outcome=outcome,
            decline_reason=decline_reason,
            note=note,
        )
        db.add(entry)
        return entry

    @staticmethod
    async def page(
        db: AsyncSession,
        user_id: int,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Entries for one user, newest first, with pagination metadata."""
        page_size = page_size or rank_policy.history_page_size
        page = max(1, page)

        if not await UserDirectory.exists(db, user_id):
            raise NotFoundError("User", user_id, code=ErrorCode.USER_NOT_FOUND)

        total = (await db.execute(
            select(func.count(RankHistoryEntry.id)).where(RankHistoryEntry.user_id == user_id)
        )).scalar_one()

        result = await db.execute(
            select(RankHistoryEntry)
            .where(RankHistoryEntry.user_id == user_id)
            .order_by(RankHistoryEntry.created_at.desc(), RankHistoryEntry.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        entries = result.scalars().all()

        return {
            "data": [entry.to_dict() for entry in entries],
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": total,
                "totalPages": math.ceil(total / page_size),
            },
        }
