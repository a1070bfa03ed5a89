"""
roster/orm/rank.py
Rank catalog, per-user rank state, and transition requirements.
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Table,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from roster.orm.base import Base, utcnow, isoformat


# =============================================================================
# Association tables
# =============================================================================

rank_transition_trainings = Table(
    "rank_transition_trainings",
    Base.metadata,
    Column(
        "requirement_id",
        Integer,
        ForeignKey("rank_transition_requirements.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "training_id",
        Integer,
        ForeignKey("trainings.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


# =============================================================================
# Models
# =============================================================================

class Rank(Base):
    """
    A rank definition. order_index defines promotion direction:
    a higher index is a higher rank.
    """
    __tablename__ = "ranks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    abbreviation = Column(String(20), nullable=False)
    order_index = Column(Integer, nullable=False)
    attendance_required_since_last_rank = Column(Integer, nullable=True)
    auto_rankup_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_index", name="uq_rank_order_index"),
        CheckConstraint(
            "attendance_required_since_last_rank IS NULL OR attendance_required_since_last_rank >= 0",
            name="ck_rank_threshold_non_negative",
        ),
    )

    def __repr__(self):
        return f"<Rank(id={self.id}, name={self.name!r}, order={self.order_index})>"

    def to_dict(self, assigned_count: int = None) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "abbreviation": self.abbreviation,
            "orderIndex": self.order_index,
            "attendanceRequiredSinceLastRank": self.attendance_required_since_last_rank,
            "autoRankupEnabled": self.auto_rankup_enabled,
        }
        if assigned_count is not None:
            data["assignedCount"] = assigned_count
        return data


class UserRank(Base):
    """
    Mutable rank state for one user. Created lazily on first assignment or toggle.
    """
    __tablename__ = "user_ranks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    current_rank_id = Column(Integer, ForeignKey("ranks.id", ondelete="SET NULL"), nullable=True)
    last_ranked_up_at = Column(DateTime(timezone=True), nullable=True)
    attendance_since_last_rank = Column(Integer, default=0, nullable=False)
    retired = Column(Boolean, default=False, nullable=False)
    interview_done = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_rank_user"),
        CheckConstraint("attendance_since_last_rank >= 0", name="ck_user_rank_since_non_negative"),
        Index("idx_user_rank_current_rank", "current_rank_id"),
    )

    user = relationship("User", back_populates="rank_state", lazy="noload")
    current_rank = relationship("Rank", lazy="noload")

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "currentRankId": self.current_rank_id,
            "lastRankedUpAt": isoformat(self.last_ranked_up_at),
            "attendanceSinceLastRank": self.attendance_since_last_rank,
            "retired": self.retired,
            "interviewDone": self.interview_done,
        }


class RankTransitionRequirement(Base):
    """
    Trainings that must be completed before a user may be promoted to target_rank.
    An empty training set means no training requirement.
    """
    __tablename__ = "rank_transition_requirements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_rank_id = Column(Integer, ForeignKey("ranks.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("target_rank_id", name="uq_transition_target_rank"),
    )

    target_rank = relationship("Rank", lazy="noload")
    required_trainings = relationship(
        "Training",
        secondary=rank_transition_trainings,
        lazy="selectin",
        order_by="Training.id",
    )

    def to_dict(self) -> dict:
        return {
            "targetRankId": self.target_rank_id,
            "requiredTrainings": [t.to_dict() for t in self.required_trainings],
        }
