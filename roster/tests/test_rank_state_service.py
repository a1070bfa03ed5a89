"""
Rank state tests: assignment bookkeeping, flag toggles, bulk operations,
rank summaries and the unranked listing.
"""
import asyncio
import logging

import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from roster.errors import ErrorCode, NotFoundError, ValidationError
from roster.orm import (
    Attendance, AttendanceStatus, Base, Orbat, Rank, RankHistoryEntry, RankTrigger, User, UserRank
)
from roster.services.rank_state_service import RankStateService


# =============================================================================
# Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def ranks(db):
    private = Rank(name="Private", abbreviation="PVT", order_index=0)
    corporal = Rank(name="Corporal", abbreviation="CPL", order_index=1, attendance_required_since_last_rank=5)
    sergeant = Rank(name="Sergeant", abbreviation="SGT", order_index=2, attendance_required_since_last_rank=10)
    db.add_all([private, corporal, sergeant])
    await db.commit()
    return {"private": private, "corporal": corporal, "sergeant": sergeant}


@pytest_asyncio.fixture
async def users(db):
    admin = User(username="admin", email="admin@example.com", is_admin=True)
    alice = User(username="alice", email="alice@example.com")
    bob = User(username="bob", email="bob@example.com")
    db.add_all([admin, alice, bob])
    await db.commit()
    return {"admin": admin, "alice": alice, "bob": bob}


async def attend(db, user, count):
    for _ in range(count):
        orbat = Orbat(name="Main op", is_main_op=True)
        db.add(orbat)
        await db.flush()
        db.add(Attendance(user_id=user.id, orbat_id=orbat.id, status=AttendanceStatus.PRESENT))
    await db.commit()


async def history_count(db, user_id=None):
    query = select(func.count(RankHistoryEntry.id))
    if user_id is not None:
        query = query.where(RankHistoryEntry.user_id == user_id)
    return (await db.execute(query)).scalar_one()


# =============================================================================
# AssignRank
# =============================================================================

class TestAssignRank:

    @pytest.mark.asyncio
    async def test_first_assignment_creates_state(self, db, ranks, users):
        alice = users["alice"]
        await attend(db, alice, 3)

        result = await RankStateService.assign_rank(db, alice.id, ranks["private"].id, actor_user_id=users["admin"].id)

        assert result["success"] is True
        assert result["userRank"]["currentRankId"] == ranks["private"].id
        assert result["userRank"]["attendanceSinceLastRank"] == 3
        assert result["userRank"]["lastRankedUpAt"] is not None
        assert result["history"]["previousRankName"] is None
        assert result["history"]["newRankName"] == "Private"
        assert result["history"]["triggeredBy"] == "admin"
        assert result["history"]["triggeredByUserId"] == users["admin"].id

    @pytest.mark.asyncio
    async def test_promotion_bookkeeping(self, db, ranks, users):
        """Private with 7 qualifying attendances moved to Corporal."""
        alice = users["alice"]
        db.add(UserRank(user_id=alice.id, current_rank_id=ranks["private"].id, attendance_since_last_rank=0))
        await db.commit()
        await attend(db, alice, 7)

        result = await RankStateService.assign_rank(db, alice.id, ranks["corporal"].id, actor_user_id=users["admin"].id)

        assert result["userRank"]["currentRankId"] == ranks["corporal"].id
        assert result["userRank"]["attendanceSinceLastRank"] == 7
        history = result["history"]
        assert history["previousRankName"] == "Private"
        assert history["newRankName"] == "Corporal"
        assert history["attendanceTotalAtChange"] == 7
        assert history["attendanceDeltaSinceLastRank"] == 7

    @pytest.mark.asyncio
    async def test_second_assignment_delta_uses_previous_counter(self, db, ranks, users):
        alice = users["alice"]
        await attend(db, alice, 4)
        await RankStateService.assign_rank(db, alice.id, ranks["private"].id)
        await attend(db, alice, 6)

        result = await RankStateService.assign_rank(db, alice.id, ranks["corporal"].id)

        assert result["history"]["attendanceTotalAtChange"] == 10
        assert result["history"]["attendanceDeltaSinceLastRank"] == 6
        assert result["userRank"]["attendanceSinceLastRank"] == 10

    @pytest.mark.asyncio
    async def test_demotion_is_allowed(self, db, ranks, users):
        alice = users["alice"]
        await RankStateService.assign_rank(db, alice.id, ranks["sergeant"].id)
        result = await RankStateService.assign_rank(db, alice.id, ranks["private"].id)
        assert result["history"]["previousRankName"] == "Sergeant"
        assert result["history"]["newRankName"] == "Private"

    @pytest.mark.asyncio
    async def test_unknown_rank(self, db, ranks, users):
        with pytest.raises(NotFoundError) as exc:
            await RankStateService.assign_rank(db, users["alice"].id, 999)
        assert exc.value.code == ErrorCode.RANK_NOT_FOUND
        assert await history_count(db) == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, db, ranks, users):
        with pytest.raises(NotFoundError) as exc:
            await RankStateService.assign_rank(db, 999, ranks["private"].id)
        assert exc.value.code == ErrorCode.USER_NOT_FOUND
        assert await history_count(db) == 0

    @pytest.mark.asyncio
    async def test_trigger_recorded(self, db, ranks, users):
        result = await RankStateService.assign_rank(
            db, users["alice"].id, ranks["private"].id, triggered_by=RankTrigger.AUTO
        )
        assert result["history"]["triggeredBy"] == "auto"
        assert result["history"]["triggeredByUserId"] is None


# =============================================================================
# Bulk assignment
# =============================================================================

class TestBulkAssign:

    @pytest.mark.asyncio
    async def test_assigns_every_user(self, db, ranks, users):
        ids = [users["alice"].id, users["bob"].id]
        result = await RankStateService.bulk_assign_rank(db, ids, ranks["corporal"].id, actor_user_id=users["admin"].id)

        assert result == {"success": True, "updatedCount": 2, "rank": ranks["corporal"].to_dict()}
        states = (await db.execute(select(UserRank).order_by(UserRank.user_id))).scalars().all()
        assert [s.current_rank_id for s in states] == [ranks["corporal"].id, ranks["corporal"].id]
        assert await history_count(db) == 2

    @pytest.mark.asyncio
    async def test_unknown_user_rejects_whole_batch(self, db, ranks, users):
        ids = [users["alice"].id, 404, users["bob"].id]
        with pytest.raises(NotFoundError) as exc:
            await RankStateService.bulk_assign_rank(db, ids, ranks["corporal"].id)

        assert "404" in exc.value.message
        assert (await db.execute(select(func.count(UserRank.id)))).scalar_one() == 0
        assert await history_count(db) == 0

    @pytest.mark.asyncio
    async def test_empty_list_rejected(self, db, ranks):
        with pytest.raises(ValidationError):
            await RankStateService.bulk_assign_rank(db, [], ranks["corporal"].id)

    @pytest.mark.asyncio
    async def test_duplicate_ids_assigned_once(self, db, ranks, users):
        alice = users["alice"].id
        result = await RankStateService.bulk_assign_rank(db, [alice, alice], ranks["private"].id)
        assert result["updatedCount"] == 1
        assert await history_count(db, alice) == 1


# =============================================================================
# Flag toggles
# =============================================================================

class TestToggles:

    @pytest.mark.asyncio
    async def test_retired_toggle_creates_state(self, db, users):
        alice = users["alice"]
        result = await RankStateService.toggle_retired(db, alice.id)

        assert result["userRank"]["retired"] is True
        assert result["userRank"]["interviewDone"] is False
        assert result["userRank"]["currentRankId"] is None
        assert result["userRank"]["attendanceSinceLastRank"] == 0

    @pytest.mark.asyncio
    async def test_retired_toggle_flips_back(self, db, users):
        alice = users["alice"]
        await RankStateService.toggle_retired(db, alice.id)
        result = await RankStateService.toggle_retired(db, alice.id)
        assert result["userRank"]["retired"] is False

    @pytest.mark.asyncio
    async def test_interview_toggle_keeps_rank(self, db, ranks, users):
        alice = users["alice"]
        await RankStateService.assign_rank(db, alice.id, ranks["private"].id)

        result = await RankStateService.toggle_interview_done(db, alice.id)

        assert result["userRank"]["interviewDone"] is True
        assert result["userRank"]["currentRankId"] == ranks["private"].id

    @pytest.mark.asyncio
    async def test_toggle_does_not_write_history(self, db, users):
        await RankStateService.toggle_interview_done(db, users["alice"].id)
        assert await history_count(db) == 0

    @pytest.mark.asyncio
    async def test_toggle_unknown_user(self, db, users):
        with pytest.raises(NotFoundError):
            await RankStateService.toggle_retired(db, 999)

    @pytest.mark.asyncio
    async def test_toggle_logs_acting_admin(self, db, users, caplog):
        caplog.set_level(logging.INFO, logger="roster.services.rank_state_service")
        admin_id, alice_id = users["admin"].id, users["alice"].id

        await RankStateService.toggle_retired(db, alice_id, actor_user_id=admin_id)
        await RankStateService.toggle_interview_done(db, alice_id, actor_user_id=admin_id)
        await RankStateService.bulk_toggle_retired(db, [alice_id], actor_user_id=admin_id)

        messages = [record.getMessage() for record in caplog.records]
        assert f"User {alice_id} retired flag set to True by {admin_id}" in messages
        assert f"User {alice_id} interview flag set to True by {admin_id}" in messages
        assert f"Retired flag toggled for 1 users by {admin_id}" in messages


class TestBulkRetireToggle:

    @pytest.mark.asyncio
    async def test_flips_each_user_independently(self, db, ranks, users):
        alice, bob = users["alice"], users["bob"]
        await RankStateService.assign_rank(db, alice.id, ranks["private"].id)
        await RankStateService.assign_rank(db, bob.id, ranks["private"].id)
        await RankStateService.toggle_retired(db, bob.id)

        result = await RankStateService.bulk_toggle_retired(db, [alice.id, bob.id])

        assert result["updatedCount"] == 2
        flags = {state["userId"]: state["retired"] for state in result["userRanks"]}
        assert flags == {alice.id: True, bob.id: False}

    @pytest.mark.asyncio
    async def test_user_without_state_rejects_batch(self, db, ranks, users):
        alice_id, bob_id = users["alice"].id, users["bob"].id
        await RankStateService.assign_rank(db, alice_id, ranks["private"].id)

        with pytest.raises(NotFoundError) as exc:
            await RankStateService.bulk_toggle_retired(db, [alice_id, bob_id])
        assert exc.value.code == ErrorCode.RANK_STATE_NOT_FOUND

        state = (await db.execute(select(UserRank).where(UserRank.user_id == alice_id))).scalar_one()
        await db.refresh(state)
        assert state.retired is False


# =============================================================================
# Reads
# =============================================================================

class TestSummary:

    @pytest.mark.asyncio
    async def test_summary_contents(self, db, ranks, users):
        alice = users["alice"]
        await RankStateService.assign_rank(db, alice.id, ranks["private"].id)
        await attend(db, alice, 3)

        summary = await RankStateService.get_summary(db, alice.id)

        assert summary["username"] == "alice"
        assert summary["currentRank"]["name"] == "Private"
        assert summary["attendance"] == {
            "currentAttendance": 3,
            "attendanceSinceLastRank": 0,
            "delta": 3,
        }

    @pytest.mark.asyncio
    async def test_summary_without_state(self, db, users):
        with pytest.raises(NotFoundError) as exc:
            await RankStateService.get_summary(db, users["alice"].id)
        assert exc.value.code == ErrorCode.RANK_STATE_NOT_FOUND


class TestUnranked:

    @pytest.mark.asyncio
    async def test_lists_users_without_rank(self, db, ranks, users):
        await RankStateService.assign_rank(db, users["alice"].id, ranks["private"].id)
        await RankStateService.toggle_interview_done(db, users["bob"].id)

        result = await RankStateService.list_unranked(db)

        names = [u["username"] for u in result["users"]]
        assert names == ["admin", "bob"]
        assert result["pagination"]["total"] == 2
        bob = result["users"][1]
        assert bob["interviewDone"] is True
        assert bob["attendanceTotal"] == 0

    @pytest.mark.asyncio
    async def test_interview_filter(self, db, users):
        await RankStateService.toggle_interview_done(db, users["bob"].id)

        done = await RankStateService.list_unranked(db, interview="done")
        not_done = await RankStateService.list_unranked(db, interview="notDone")

        assert [u["username"] for u in done["users"]] == ["bob"]
        assert [u["username"] for u in not_done["users"]] == ["admin", "alice"]

    @pytest.mark.asyncio
    async def test_retired_filter(self, db, users):
        await RankStateService.toggle_retired(db, users["alice"].id)

        retired = await RankStateService.list_unranked(db, retired="retired")
        active = await RankStateService.list_unranked(db, retired="active")

        assert [u["username"] for u in retired["users"]] == ["alice"]
        assert [u["username"] for u in active["users"]] == ["admin", "bob"]

    @pytest.mark.asyncio
    async def test_paging(self, db, users):
        result = await RankStateService.list_unranked(db, page=2, limit=2)
        assert [u["username"] for u in result["users"]] == ["bob"]
        assert result["pagination"] == {"page": 2, "limit": 2, "total": 3, "totalPages": 2}

    @pytest.mark.asyncio
    async def test_invalid_filter(self, db, users):
        with pytest.raises(ValidationError):
            await RankStateService.list_unranked(db, interview="maybe")


# =============================================================================
# Concurrent writers
# =============================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Separate sessions over a file-backed database, one connection each."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'roster.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


class TestConcurrentToggles:

    @pytest.mark.asyncio
    async def test_racing_toggles_are_serialized(self, session_factory):
        async with session_factory() as session:
            alice = User(username="alice", email="alice@example.com")
            session.add(alice)
            await session.commit()
            alice_id = alice.id

        async def toggle_once():
            async with session_factory() as session:
                return await RankStateService.toggle_retired(session, alice_id)

        results = await asyncio.gather(*(toggle_once() for _ in range(10)))

        assert sum(1 for r in results if r["userRank"]["retired"]) == 5
        async with session_factory() as session:
            state = (await session.execute(select(UserRank).where(UserRank.user_id == alice_id))).scalar_one()
            assert state.retired is False
            rows = (await session.execute(select(func.count(UserRank.id)))).scalar_one()
            assert rows == 1
