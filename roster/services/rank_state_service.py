"""
roster/services/rank_state_service.py
Rank state tracker: per-user current rank, counters and flags.

Every read-modify-write on a user's rank state happens inside a single
transaction holding that user's row lock (SELECT ... FOR UPDATE) or as a
single atomic upsert statement. The state change and its history entry
always commit together.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, or_, and_, not_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config.rank_policy import RankPolicy
from roster.errors import ErrorCode, NotFoundError, ValidationError
from roster.orm.base import utcnow
from roster.orm.rank import Rank, UserRank
from roster.orm.rank_history import RankHistoryEntry, RankTrigger
from roster.orm.user import User
from roster.services.attendance_service import AttendanceAggregator
from roster.services.directory import UserDirectory
from roster.services.rank_history_service import RankHistoryService
from roster.services.rank_rules import attendance_delta
from roster.services.transaction import atomic

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT DO UPDATE
UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}

TOGGLE_FLAGS = ("retired", "interview_done")

INTERVIEW_FILTERS = ("done", "notDone", "all")
RETIRED_FILTERS = ("active", "retired", "all")
UNRANKED_SORTS = ("username", "id")


class RankStateService:
    """
    Service for mutating and reading per-user rank state.
    Mutating methods commit; the *_in_transaction helpers do not.
    """

    # =========================================================================
    # Lookups
    # =========================================================================

    @staticmethod
    async def get_rank_or_404(db: AsyncSession, rank_id: int) -> Rank:
        # Shared lock: a concurrent delete of the rank waits for this assignment
        rank = (await db.execute(
            select(Rank).where(Rank.id == rank_id).with_for_update(read=True)
        )).scalar_one_or_none()
        if not rank:
            raise NotFoundError("Rank", rank_id, code=ErrorCode.RANK_NOT_FOUND)
        return rank

    @staticmethod
    async def ensure_user_exists(db: AsyncSession, user_id: int) -> None:
        if not await UserDirectory.exists(db, user_id):
            raise NotFoundError("User", user_id, code=ErrorCode.USER_NOT_FOUND)

    @staticmethod
    async def lock_state(db: AsyncSession, user_id: int) -> Optional[UserRank]:
        result = await db.execute(
            select(UserRank)
            .where(UserRank.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # AssignRank
    # =========================================================================

    @classmethod
    async def apply_rank_in_transaction(
        cls,
        db: AsyncSession,
        user_id: int,
        rank: Rank,
        *,
        triggered_by: RankTrigger,
        actor_user_id: Optional[int] = None,
        external_actor_id: Optional[str] = None,
        note: Optional[str] = None,
        policy: Optional[RankPolicy] = None,
    ) -> Tuple[UserRank, RankHistoryEntry]:
        """
        Move a user to `rank` and stage the matching history entry.

        The since-last-rank counter restarts at the current cumulative
        qualifying total; the history delta is that total minus the previous
        counter, floored at zero. Does not commit.
        """
        state = await cls.lock_state(db, user_id)
        total = await AttendanceAggregator.qualifying_total(db, user_id, policy)

        previous_since = state.attendance_since_last_rank if state else 0
        previous_rank_name = None
        if state is not None and state.current_rank_id is not None:
            previous_rank = await db.get(Rank, state.current_rank_id)
            previous_rank_name = previous_rank.name if previous_rank else None

        if state is None:
            state = UserRank(user_id=user_id, retired=False, interview_done=False)
            db.add(state)

        state.current_rank_id = rank.id
        state.last_ranked_up_at = utcnow()
        state.attendance_since_last_rank = total

        entry = RankHistoryService.append(
            db,
            user_id=user_id,
            previous_rank_name=previous_rank_name,
            new_rank_name=rank.name,
            attendance_total=total,
            attendance_delta=attendance_delta(total, previous_since),
            triggered_by=triggered_by,
            actor_user_id=actor_user_id,
            external_actor_id=external_actor_id,
            note=note,
        )
        await db.flush()
        return state, entry

    @classmethod
    async def assign_rank(
        cls,
        db: AsyncSession,
        user_id: int,
        rank_id: int,
        actor_user_id: Optional[int] = None,
        triggered_by: RankTrigger = RankTrigger.ADMIN,
    ) -> Dict[str, Any]:
        """Assign a rank to one user and record it in the history ledger."""
        async with atomic(db, "rank assignment"):
            await cls.ensure_user_exists(db, user_id)
            rank = await cls.get_rank_or_404(db, rank_id)
            state, entry = await cls.apply_rank_in_transaction(
                db,
                user_id,
                rank,
                triggered_by=triggered_by,
                actor_user_id=actor_user_id,
            )

        logger.info(
            f"Rank {rank.name} assigned to user {user_id} "
            f"(trigger={triggered_by.value}, actor={actor_user_id})"
        )
        return {
            "success": True,
            "userRank": state.to_dict(),
            "history": entry.to_dict(),
        }

    @classmethod
    async def bulk_assign_rank(
        cls,
        db: AsyncSession,
        user_ids: Sequence[int],
        rank_id: int,
        actor_user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Assign one rank to many users as a single transaction.
        Any unknown user id rejects the whole batch before the first write.
        """
        if not user_ids:
            raise ValidationError("userIds must be a non-empty list", code=ErrorCode.MISSING_FIELD)

        ordered_ids = list(dict.fromkeys(user_ids))

        async with atomic(db, "bulk rank assignment"):
            rank = await cls.get_rank_or_404(db, rank_id)

            missing = await UserDirectory.missing_ids(db, ordered_ids)
            if missing:
                logger.warning(f"Bulk rank assignment rejected, unknown users: {missing}")
                raise NotFoundError(
                    "User",
                    ", ".join(str(m) for m in missing),
                    code=ErrorCode.USER_NOT_FOUND,
                )

            for user_id in ordered_ids:
                await cls.apply_rank_in_transaction(
                    db,
                    user_id,
                    rank,
                    triggered_by=RankTrigger.ADMIN,
                    actor_user_id=actor_user_id,
                )

        logger.info(f"Rank {rank.name} bulk-assigned to {len(ordered_ids)} users by {actor_user_id}")
        return {"success": True, "updatedCount": len(ordered_ids), "rank": rank.to_dict()}

    # =========================================================================
    # Flag toggles
    # =========================================================================

    @classmethod
    async def _toggle_flag(cls, db: AsyncSession, user_id: int, flag: str) -> UserRank:
        """
        Flip a boolean flag, creating the state row with the flag set when absent.
        Uses one INSERT ... ON CONFLICT DO UPDATE statement where the dialect
        supports it, otherwise a row-locked read-modify-write.
        """
        if flag not in TOGGLE_FLAGS:
            raise ValueError(f"Unknown rank state flag: {flag}")

        column = getattr(UserRank, flag)
        dialect = db.get_bind().dialect.name
        insert_fn = UPSERT_INSERTS.get(dialect)
        now = utcnow()

        if insert_fn is not None:
            values = {
                "user_id": user_id,
                "attendance_since_last_rank": 0,
                "retired": False,
                "interview_done": False,
                "created_at": now,
                "updated_at": now,
            }
            values[flag] = True
            stmt = insert_fn(UserRank).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserRank.user_id],
                set_={flag: not_(column), "updated_at": now},
            )
            await db.execute(stmt)
        else:
            state = await cls.lock_state(db, user_id)
            if state is None:
                state = UserRank(user_id=user_id, retired=False, interview_done=False)
                setattr(state, flag, True)
                db.add(state)
            else:
                setattr(state, flag, not getattr(state, flag))
            await db.flush()

        result = await db.execute(
            select(UserRank)
            .where(UserRank.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @classmethod
    async def toggle_retired(
        cls, db: AsyncSession, user_id: int, actor_user_id: Optional[int] = None
    ) -> Dict[str, Any]:
        async with atomic(db, "retired toggle"):
            await cls.ensure_user_exists(db, user_id)
            state = await cls._toggle_flag(db, user_id, "retired")
        logger.info(f"User {user_id} retired flag set to {state.retired} by {actor_user_id}")
        return {"success": True, "userRank": state.to_dict()}

    @classmethod
    async def toggle_interview_done(
        cls, db: AsyncSession, user_id: int, actor_user_id: Optional[int] = None
    ) -> Dict[str, Any]:
        async with atomic(db, "interview toggle"):
            await cls.ensure_user_exists(db, user_id)
            state = await cls._toggle_flag(db, user_id, "interview_done")
        logger.info(f"User {user_id} interview flag set to {state.interview_done} by {actor_user_id}")
        return {"success": True, "userRank": state.to_dict()}

    @classmethod
    async def bulk_toggle_retired(
        cls, db: AsyncSession, user_ids: Sequence[int], actor_user_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Flip `retired` for every listed user that has rank state, all or nothing."""
        if not user_ids:
            raise ValidationError("userIds must be a non-empty list", code=ErrorCode.MISSING_FIELD)

        ordered_ids = list(dict.fromkeys(user_ids))

        async with atomic(db, "bulk retired toggle"):
            locked = await db.execute(
                select(UserRank.user_id)
                .where(UserRank.user_id.in_(ordered_ids))
                .with_for_update()
            )
            present = set(locked.scalars().all())
            missing = [uid for uid in ordered_ids if uid not in present]
            if missing:
                logger.warning(f"Bulk retired toggle rejected, users without rank state: {missing}")
                raise NotFoundError(
                    "Rank state for user",
                    ", ".join(str(m) for m in missing),
                    code=ErrorCode.RANK_STATE_NOT_FOUND,
                )

            await db.execute(
                update(UserRank)
                .where(UserRank.user_id.in_(ordered_ids))
                .values(retired=not_(UserRank.retired), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

            refreshed = await db.execute(
                select(UserRank)
                .where(UserRank.user_id.in_(ordered_ids))
                .order_by(UserRank.user_id)
                .execution_options(populate_existing=True)
            )
            states = refreshed.scalars().all()

        logger.info(f"Retired flag toggled for {len(states)} users by {actor_user_id}")
        return {
            "success": True,
            "updatedCount": len(states),
            "userRanks": [state.to_dict() for state in states],
        }

    # =========================================================================
    # Reads
    # =========================================================================

    @classmethod
    async def get_summary(
        cls,
        db: AsyncSession,
        user_id: int,
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        """Current rank, flags and attendance snapshot for one user."""
        state = (await db.execute(
            select(UserRank).where(UserRank.user_id == user_id)
        )).scalar_one_or_none()
        if not state:
            raise NotFoundError("Rank state for user", user_id, code=ErrorCode.RANK_STATE_NOT_FOUND)

        current_rank = None
        if state.current_rank_id is not None:
            current_rank = await db.get(Rank, state.current_rank_id)

        user = await UserDirectory.lookup(db, user_id)
        snapshot = await AttendanceAggregator.snapshot(db, user_id, policy, state=state)

        data = state.to_dict()
        data.update({
            "username": user["username"] if user else None,
            "currentRank": current_rank.to_dict() if current_rank else None,
            "attendance": snapshot.to_dict(),
        })
        return data

    @staticmethod
    async def list_unranked(
        db: AsyncSession,
        page: int = 1,
        limit: int = 50,
        interview: str = "all",
        retired: str = "all",
        sort: str = "username",
        policy: Optional[RankPolicy] = None,
    ) -> Dict[str, Any]:
        """Users with no rank state, or with state but no current rank."""
        if interview not in INTERVIEW_FILTERS:
            raise ValidationError(f"interview must be one of: {', '.join(INTERVIEW_FILTERS)}")
        if retired not in RETIRED_FILTERS:
            raise ValidationError(f"retired must be one of: {', '.join(RETIRED_FILTERS)}")
        if sort not in UNRANKED_SORTS:
            raise ValidationError(f"sort must be one of: {', '.join(UNRANKED_SORTS)}")
        page = max(1, page)
        limit = max(1, limit)

        conditions = [or_(UserRank.id.is_(None), UserRank.current_rank_id.is_(None))]
        if interview == "done":
            conditions.append(UserRank.interview_done.is_(True))
        elif interview == "notDone":
            conditions.append(or_(UserRank.id.is_(None), UserRank.interview_done.is_(False)))
        if retired == "retired":
            conditions.append(UserRank.retired.is_(True))
        elif retired == "active":
            conditions.append(or_(UserRank.id.is_(None), UserRank.retired.is_(False)))

        where = and_(*conditions)
        base = select(User, UserRank).outerjoin(UserRank, UserRank.user_id == User.id).where(where)
        count_query = (
            select(func.count(User.id))
            .select_from(User)
            .outerjoin(UserRank, UserRank.user_id == User.id)
            .where(where)
        )

        order = [User.id.asc()] if sort == "id" else [User.username.asc(), User.id.asc()]
        total = (await db.execute(count_query)).scalar_one()
        rows = (await db.execute(
            base.order_by(*order).offset((page - 1) * limit).limit(limit)
        )).all()

        totals = await AttendanceAggregator.qualifying_totals(db, [user.id for user, _ in rows], policy)

        users: List[Dict[str, Any]] = []
        for user, state in rows:
            users.append({
                "id": user.id,
                "username": user.username,
                "email": user.email,
                "interviewDone": state.interview_done if state else False,
                "retired": state.retired if state else False,
                "attendanceTotal": totals.get(user.id, 0),
            })

        return {
            "users": users,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }
