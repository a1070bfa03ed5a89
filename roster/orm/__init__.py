"""
roster/orm/__init__.py
Importing this package registers every model on Base.metadata.
"""
from roster.orm.base import Base
from roster.orm.user import User
from roster.orm.attendance import Orbat, Attendance, AttendanceStatus
from roster.orm.training import Training, UserTraining
from roster.orm.rank import Rank, UserRank, RankTransitionRequirement, rank_transition_trainings
from roster.orm.rank_history import RankHistoryEntry, RankTrigger, RankOutcome, ImmutableHistoryError
from roster.orm.promotion import PromotionProposal, ProposalStatus

__all__ = [
    "Base",
    "User",
    "Orbat",
    "Attendance",
    "AttendanceStatus",
    "Training",
    "UserTraining",
    "Rank",
    "UserRank",
    "RankTransitionRequirement",
    "rank_transition_trainings",
    "RankHistoryEntry",
    "RankTrigger",
    "RankOutcome",
    "ImmutableHistoryError",
    "PromotionProposal",
    "ProposalStatus",
]
