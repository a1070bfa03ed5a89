"""
roster/services/transaction.py
Commit-or-rollback boundary shared by the mutating rank services.
"""
import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from roster.errors import ConflictError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def atomic(db: AsyncSession, context: str):
    """
    Run the enclosed block as one unit of work.

    Commits on success. On any exception the session is rolled back and the
    error re-raised; a unique/foreign-key violation (typically two writers
    racing to create the same row) surfaces as ConflictError so the caller
    can retry from the start.
    """
    try:
        yield
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Integrity conflict during {context}: {e.orig}")
        raise ConflictError(
            f"Concurrent modification during {context}; retry the operation"
        ) from e
    except Exception:
        await db.rollback()
        raise
