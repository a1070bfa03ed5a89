"""
roster/orm/attendance.py
Attendance ledger models (events and per-user presence records).

Owned by the attendance subsystem; append-only from the rank subsystem's
point of view and only ever counted here.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from roster.orm.base import Base, utcnow, enum_column


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    LATE = "late"
    GONE_EARLY = "gone_early"
    PARTIAL = "partial"
    ABSENT = "absent"
    EXCUSED = "excused"


class Orbat(Base):
    """A scheduled operation (order of battle) members sign up for."""
    __tablename__ = "orbats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    event_date = Column(DateTime(timezone=True), nullable=True)
    is_main_op = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    attendances = relationship("Attendance", back_populates="orbat", lazy="noload")


class Attendance(Base):
    __tablename__ = "attendances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    orbat_id = Column(Integer, ForeignKey("orbats.id", ondelete="CASCADE"), nullable=False)
    status = Column(enum_column(AttendanceStatus), nullable=False, default=AttendanceStatus.PRESENT)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "orbat_id", name="uq_attendance_user_orbat"),
        Index("idx_attendance_user", "user_id"),
    )

    orbat = relationship("Orbat", back_populates="attendances", lazy="noload")
