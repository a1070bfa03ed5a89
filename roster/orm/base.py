"""
roster/orm/base.py
Declarative base and shared column helpers for all ORM models
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Type

from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every created_at/updated_at column."""
    return datetime.now(timezone.utc)


def enum_column(enum_cls: Type[Enum], length: int = 20) -> SQLEnum:
    """
    Store a str-Enum by its value (not its member name) in a VARCHAR column.
    Portable between SQLite and PostgreSQL.
    """
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=length,
    )


def isoformat(value):
    return value.isoformat() if value else None
