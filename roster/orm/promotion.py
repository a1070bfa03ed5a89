"""
roster/orm/promotion.py
Promotion proposal queue.

Status flow: PENDING -> APPROVED | DECLINED. Both outcomes are terminal.
"""
from enum import Enum

from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey, Index

from roster.orm.base import Base, utcnow, enum_column, isoformat


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class PromotionProposal(Base):
    __tablename__ = "promotion_proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    current_rank_id = Column(Integer, ForeignKey("ranks.id", ondelete="CASCADE"), nullable=False)
    next_rank_id = Column(Integer, ForeignKey("ranks.id", ondelete="CASCADE"), nullable=False)
    status = Column(enum_column(ProposalStatus), nullable=False, default=ProposalStatus.PENDING)

    # Snapshot at the time the proposal was raised
    attendance_total_at_proposal = Column(Integer, nullable=False, default=0)
    attendance_delta_since_last_rank = Column(Integer, nullable=False, default=0)

    decided_at = Column(DateTime(timezone=True), nullable=True)
    decided_by_user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decline_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_proposal_status_created", "status", "created_at"),
        Index("idx_proposal_user_status", "user_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "currentRankId": self.current_rank_id,
            "nextRankId": self.next_rank_id,
            "status": self.status.value if self.status else None,
            "attendanceTotalAtProposal": self.attendance_total_at_proposal,
            "attendanceDeltaSinceLastRank": self.attendance_delta_since_last_rank,
            "decidedAt": isoformat(self.decided_at),
            "decidedByUserId": self.decided_by_user_id,
            "declineReason": self.decline_reason,
            "createdAt": isoformat(self.created_at),
        }
