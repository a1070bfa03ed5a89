"""
Transition requirement tests: attaching and detaching required trainings.
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from roster.errors import ErrorCode, NotFoundError
from roster.orm import Base, Rank, Training
from roster.services.transition_requirement_service import TransitionRequirementService


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
async def setup(db):
    rank = Rank(name="Sergeant", abbreviation="SGT", order_index=2)
    lifesaver = Training(name="Combat Lifesaver", category="medical")
    leader = Training(name="Fireteam Leader", category="leadership")
    db.add_all([rank, lifesaver, leader])
    await db.commit()
    return {"rank_id": rank.id, "lifesaver_id": lifesaver.id, "leader_id": leader.id}


class TestTransitionRequirements:

    @pytest.mark.asyncio
    async def test_no_requirement_by_default(self, db, setup):
        listed = await TransitionRequirementService.list_required(db, setup["rank_id"])
        assert listed == {"targetRankId": setup["rank_id"], "requiredTrainings": []}
        assert await TransitionRequirementService.required_training_ids(db, setup["rank_id"]) == set()

    @pytest.mark.asyncio
    async def test_add_trainings(self, db, setup):
        await TransitionRequirementService.add_training(db, setup["rank_id"], setup["leader_id"])
        listed = await TransitionRequirementService.add_training(db, setup["rank_id"], setup["lifesaver_id"])

        names = [t["name"] for t in listed["requiredTrainings"]]
        assert sorted(names) == ["Combat Lifesaver", "Fireteam Leader"]
        assert await TransitionRequirementService.required_training_ids(db, setup["rank_id"]) == {
            setup["lifesaver_id"], setup["leader_id"]
        }

    @pytest.mark.asyncio
    async def test_adding_twice_is_a_no_op(self, db, setup):
        await TransitionRequirementService.add_training(db, setup["rank_id"], setup["leader_id"])
        listed = await TransitionRequirementService.add_training(db, setup["rank_id"], setup["leader_id"])
        assert len(listed["requiredTrainings"]) == 1

    @pytest.mark.asyncio
    async def test_removing_last_training_leaves_empty_set(self, db, setup):
        await TransitionRequirementService.add_training(db, setup["rank_id"], setup["leader_id"])
        listed = await TransitionRequirementService.remove_training(db, setup["rank_id"], setup["leader_id"])

        assert listed["requiredTrainings"] == []
        assert await TransitionRequirementService.required_training_ids(db, setup["rank_id"]) == set()

    @pytest.mark.asyncio
    async def test_unknown_training(self, db, setup):
        with pytest.raises(NotFoundError) as exc:
            await TransitionRequirementService.add_training(db, setup["rank_id"], 999)
        assert exc.value.code == ErrorCode.TRAINING_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_rank(self, db, setup):
        with pytest.raises(NotFoundError) as exc:
            await TransitionRequirementService.add_training(db, 999, setup["leader_id"])
        assert exc.value.code == ErrorCode.RANK_NOT_FOUND

    @pytest.mark.asyncio
    async def test_remove_without_requirement(self, db, setup):
        with pytest.raises(NotFoundError):
            await TransitionRequirementService.remove_training(db, setup["rank_id"], setup["leader_id"])
