"""
roster/orm/user.py
User directory model.

Owned by the membership subsystem; the rank subsystem only reads it
(existence checks, username lookups, admin flag).
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.orm import relationship

from roster.orm.base import Base, utcnow, isoformat


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    username = Column(String(100), nullable=True, index=True)
    email = Column(String(255), nullable=True, unique=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    rank_state = relationship(
        "UserRank",
        back_populates="user",
        uselist=False,
        lazy="noload",
    )

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username!r}, admin={self.is_admin})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "isAdmin": self.is_admin,
            "createdAt": isoformat(self.created_at),
        }
