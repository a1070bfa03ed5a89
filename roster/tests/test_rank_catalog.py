"""
Rank catalog tests: creation, partial updates, guarded deletion and reordering.
"""
import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from roster.errors import ConflictError, ErrorCode, NotFoundError, ValidationError
from roster.orm import (
    Base, PromotionProposal, ProposalStatus, Rank, RankTransitionRequirement, Training, User, UserRank
)
from roster.services.rank_catalog_service import RankCatalogService


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
async def catalog(db):
    ranks = [
        await RankCatalogService.create_rank(db, "Private", "PVT", 0),
        await RankCatalogService.create_rank(db, "Corporal", "CPL", 1, attendance_required_since_last_rank=5),
        await RankCatalogService.create_rank(db, "Sergeant", "SGT", 2, 10, auto_rankup_enabled=True),
    ]
    return {rank.name: rank.id for rank in ranks}


async def order_of(db):
    ranks = await RankCatalogService.list_ranks(db)
    return [(rank.name, rank.order_index) for rank in ranks]


# =============================================================================
# Create / list
# =============================================================================

class TestCreate:

    @pytest.mark.asyncio
    async def test_list_is_ordered(self, db, catalog):
        assert await order_of(db) == [("Private", 0), ("Corporal", 1), ("Sergeant", 2)]

    @pytest.mark.asyncio
    async def test_duplicate_position_refused(self, db, catalog):
        with pytest.raises(ConflictError) as exc:
            await RankCatalogService.create_rank(db, "Lance Corporal", "LCPL", 1)
        assert exc.value.code == ErrorCode.DUPLICATE_POSITION
        assert len(await order_of(db)) == 3

    @pytest.mark.asyncio
    async def test_catalog_carries_assigned_counts(self, db, catalog):
        user = User(username="alice", email="alice@example.com")
        db.add(user)
        await db.flush()
        db.add(UserRank(user_id=user.id, current_rank_id=catalog["Corporal"]))
        await db.commit()

        listed = await RankCatalogService.list_catalog(db)
        counts = {entry["name"]: entry["assignedCount"] for entry in listed}
        assert counts == {"Private": 0, "Corporal": 1, "Sergeant": 0}

    @pytest.mark.asyncio
    async def test_next_rank(self, db, catalog):
        private = await RankCatalogService.get_rank(db, catalog["Private"])
        sergeant = await RankCatalogService.get_rank(db, catalog["Sergeant"])
        assert (await RankCatalogService.next_rank(db, private)).name == "Corporal"
        assert await RankCatalogService.next_rank(db, sergeant) is None

    @pytest.mark.asyncio
    async def test_next_rank_skips_gaps(self, db):
        low = await RankCatalogService.create_rank(db, "Recruit", "RCT", 0)
        await RankCatalogService.create_rank(db, "Specialist", "SPC", 7)
        assert (await RankCatalogService.next_rank(db, low)).name == "Specialist"


# =============================================================================
# Update
# =============================================================================

class TestUpdate:

    @pytest.mark.asyncio
    async def test_partial_update(self, db, catalog):
        rank = await RankCatalogService.update_rank(db, catalog["Corporal"], {"name": "Lance Corporal"})
        assert rank.name == "Lance Corporal"
        assert rank.abbreviation == "CPL"
        assert rank.attendance_required_since_last_rank == 5

    @pytest.mark.asyncio
    async def test_threshold_can_be_cleared(self, db, catalog):
        rank = await RankCatalogService.update_rank(
            db, catalog["Corporal"], {"attendance_required_since_last_rank": None}
        )
        assert rank.attendance_required_since_last_rank is None

    @pytest.mark.asyncio
    async def test_move_onto_taken_position(self, db, catalog):
        with pytest.raises(ConflictError):
            await RankCatalogService.update_rank(db, catalog["Private"], {"order_index": 2})

    @pytest.mark.asyncio
    async def test_unknown_field(self, db, catalog):
        with pytest.raises(ValidationError):
            await RankCatalogService.update_rank(db, catalog["Private"], {"colour": "green"})

    @pytest.mark.asyncio
    async def test_unknown_rank(self, db, catalog):
        with pytest.raises(NotFoundError):
            await RankCatalogService.update_rank(db, 999, {"name": "Ghost"})


# =============================================================================
# Delete
# =============================================================================

class TestDelete:

    @pytest.mark.asyncio
    async def test_assigned_rank_cannot_be_deleted(self, db, catalog):
        user = User(username="alice", email="alice@example.com")
        db.add(user)
        await db.flush()
        db.add(UserRank(user_id=user.id, current_rank_id=catalog["Corporal"]))
        await db.commit()

        with pytest.raises(ConflictError) as exc:
            await RankCatalogService.delete_rank(db, catalog["Corporal"])

        assert exc.value.code == ErrorCode.RANK_IN_USE
        assert exc.value.details == {"assignedCount": 1}
        assert len(await order_of(db)) == 3

    @pytest.mark.asyncio
    async def test_delete_removes_requirement_and_proposals(self, db, catalog):
        user = User(username="alice", email="alice@example.com")
        training = Training(name="Combat Lifesaver")
        db.add_all([user, training])
        await db.flush()
        requirement = RankTransitionRequirement(target_rank_id=catalog["Sergeant"])
        requirement.required_trainings.append(training)
        db.add(requirement)
        db.add(PromotionProposal(
            user_id=user.id,
            current_rank_id=catalog["Corporal"],
            next_rank_id=catalog["Sergeant"],
            status=ProposalStatus.PENDING,
        ))
        await db.commit()

        await RankCatalogService.delete_rank(db, catalog["Sergeant"])

        assert await order_of(db) == [("Private", 0), ("Corporal", 1)]
        assert (await db.execute(select(func.count(RankTransitionRequirement.id)))).scalar_one() == 0
        assert (await db.execute(select(func.count(PromotionProposal.id)))).scalar_one() == 0

    @pytest.mark.asyncio
    async def test_delete_unknown(self, db):
        with pytest.raises(NotFoundError):
            await RankCatalogService.delete_rank(db, 999)


# =============================================================================
# Reorder
# =============================================================================

class TestReorder:

    @pytest.mark.asyncio
    async def test_swap_positions(self, db, catalog):
        ranks = await RankCatalogService.reorder(db, [
            {"id": catalog["Private"], "orderIndex": 1},
            {"id": catalog["Corporal"], "orderIndex": 0},
        ])
        assert [rank.name for rank in ranks] == ["Corporal", "Private", "Sergeant"]
        assert await order_of(db) == [("Corporal", 0), ("Private", 1), ("Sergeant", 2)]

    @pytest.mark.asyncio
    async def test_rotate_all(self, db, catalog):
        await RankCatalogService.reorder(db, [
            {"id": catalog["Private"], "orderIndex": 2},
            {"id": catalog["Corporal"], "orderIndex": 0},
            {"id": catalog["Sergeant"], "orderIndex": 1},
        ])
        assert await order_of(db) == [("Corporal", 0), ("Sergeant", 1), ("Private", 2)]

    @pytest.mark.asyncio
    async def test_collision_with_unlisted_rank(self, db, catalog):
        with pytest.raises(ConflictError):
            await RankCatalogService.reorder(db, [{"id": catalog["Private"], "orderIndex": 2}])
        assert await order_of(db) == [("Private", 0), ("Corporal", 1), ("Sergeant", 2)]

    @pytest.mark.asyncio
    async def test_duplicate_targets(self, db, catalog):
        with pytest.raises(ValidationError):
            await RankCatalogService.reorder(db, [
                {"id": catalog["Private"], "orderIndex": 5},
                {"id": catalog["Corporal"], "orderIndex": 5},
            ])

    @pytest.mark.asyncio
    async def test_duplicate_ids(self, db, catalog):
        with pytest.raises(ValidationError):
            await RankCatalogService.reorder(db, [
                {"id": catalog["Private"], "orderIndex": 5},
                {"id": catalog["Private"], "orderIndex": 6},
            ])

    @pytest.mark.asyncio
    async def test_unknown_rank(self, db, catalog):
        with pytest.raises(NotFoundError):
            await RankCatalogService.reorder(db, [{"id": 999, "orderIndex": 9}])

    @pytest.mark.asyncio
    async def test_empty(self, db):
        with pytest.raises(ValidationError):
            await RankCatalogService.reorder(db, [])
