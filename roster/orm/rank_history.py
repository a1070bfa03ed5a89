"""
roster/orm/rank_history.py
Append-only rank history ledger.

Rows are written once and never updated or deleted; ORM-level listeners
refuse any attempt to flush a modification or deletion of a persisted entry.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index, event

from roster.orm.base import Base, utcnow, enum_column, isoformat


class RankTrigger(str, Enum):
    ADMIN = "admin"
    AUTO = "auto"
    SELF = "self"


class RankOutcome(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"


class RankHistoryEntry(Base):
    __tablename__ = "rank_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # Names, not ids: history must stay readable after a rank is renamed or deleted
    previous_rank_name = Column(String(100), nullable=True)
    new_rank_name = Column(String(100), nullable=False)
    attendance_total_at_change = Column(Integer, nullable=False, default=0)
    attendance_delta_since_last_rank = Column(Integer, nullable=False, default=0)
    triggered_by = Column(enum_column(RankTrigger), nullable=False)
    triggered_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    triggered_by_external_id = Column(String(100), nullable=True)
    outcome = Column(enum_column(RankOutcome), nullable=False, default=RankOutcome.APPROVED)
    decline_reason = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_rank_history_user_created", "user_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "previousRankName": self.previous_rank_name,
            "newRankName": self.new_rank_name,
            "attendanceTotalAtChange": self.attendance_total_at_change,
            "attendanceDeltaSinceLastRank": self.attendance_delta_since_last_rank,
            "triggeredBy": self.triggered_by.value if self.triggered_by else None,
            "triggeredByUserId": self.triggered_by_user_id,
            "triggeredByExternalId": self.triggered_by_external_id,
            "outcome": self.outcome.value if self.outcome else None,
            "declineReason": self.decline_reason,
            "note": self.note,
            "createdAt": isoformat(self.created_at),
        }


class ImmutableHistoryError(RuntimeError):
    """Raised when code attempts to modify or delete a persisted history entry."""


@event.listens_for(RankHistoryEntry, "before_update")
def _refuse_history_update(mapper, connection, target):
    raise ImmutableHistoryError(f"rank history entry {target.id} is append-only")


@event.listens_for(RankHistoryEntry, "before_delete")
def _refuse_history_delete(mapper, connection, target):
    raise ImmutableHistoryError(f"rank history entry {target.id} cannot be deleted")
