"""
roster/services/transition_requirement_service.py
Required trainings per target rank.

A requirement row exists at most once per target rank. Removing its last
training leaves an empty set, which means "no training requirement".
"""
import logging
from typing import Any, Dict, Optional, Set

from sqlalchemy import select, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from roster.errors import ErrorCode, NotFoundError
from roster.orm.rank import RankTransitionRequirement, rank_transition_trainings
from roster.orm.training import Training
from roster.services.rank_catalog_service import RankCatalogService
from roster.services.transaction import atomic

logger = logging.getLogger(__name__)


class TransitionRequirementService:

    @staticmethod
    async def _find(db: AsyncSession, rank_id: int) -> Optional[RankTransitionRequirement]:
        result = await db.execute(
            select(RankTransitionRequirement)
            .where(RankTransitionRequirement.target_rank_id == rank_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def required_training_ids(db: AsyncSession, rank_id: int) -> Set[int]:
        result = await db.execute(
            select(rank_transition_trainings.c.training_id)
            .join(
                RankTransitionRequirement,
                RankTransitionRequirement.id == rank_transition_trainings.c.requirement_id,
            )
            .where(RankTransitionRequirement.target_rank_id == rank_id)
        )
        return set(result.scalars().all())

    @classmethod
    async def list_required(cls, db: AsyncSession, rank_id: int) -> Dict[str, Any]:
        await RankCatalogService.get_rank(db, rank_id)
        requirement = await cls._find(db, rank_id)
        trainings = requirement.required_trainings if requirement else []
        return {
            "targetRankId": rank_id,
            "requiredTrainings": [t.to_dict() for t in trainings],
        }

    @classmethod
    async def add_training(
        cls,
        db: AsyncSession,
        rank_id: int,
        training_id: int,
        actor_user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Attach a required training; adding one that is already required is a no-op."""
        async with atomic(db, "transition requirement update"):
            await RankCatalogService.get_rank(db, rank_id)
            training = (await db.execute(
                select(Training).where(Training.id == training_id)
            )).scalar_one_or_none()
            if not training:
                raise NotFoundError("Training", training_id, code=ErrorCode.TRAINING_NOT_FOUND)

            requirement = await cls._find(db, rank_id)
            if requirement is None:
                requirement = RankTransitionRequirement(target_rank_id=rank_id)
                db.add(requirement)
                await db.flush()

            already = (await db.execute(
                select(rank_transition_trainings.c.training_id).where(
                    rank_transition_trainings.c.requirement_id == requirement.id,
                    rank_transition_trainings.c.training_id == training_id,
                )
            )).first()
            if already is None:
                await db.execute(
                    insert(rank_transition_trainings).values(
                        requirement_id=requirement.id,
                        training_id=training_id,
                    )
                )
                logger.info(f"Training {training_id} now required for rank {rank_id} (actor={actor_user_id})")

        return await cls.list_required(db, rank_id)

    @classmethod
    async def remove_training(
        cls,
        db: AsyncSession,
        rank_id: int,
        training_id: int,
        actor_user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        async with atomic(db, "transition requirement update"):
            await RankCatalogService.get_rank(db, rank_id)
            requirement = await cls._find(db, rank_id)
            if requirement is None:
                raise NotFoundError("Transition requirement for rank", rank_id)

            await db.execute(
                delete(rank_transition_trainings).where(
                    rank_transition_trainings.c.requirement_id == requirement.id,
                    rank_transition_trainings.c.training_id == training_id,
                )
            )

        logger.info(f"Training {training_id} no longer required for rank {rank_id} (actor={actor_user_id})")
        return await cls.list_required(db, rank_id)
