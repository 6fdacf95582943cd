"""Translation of driver errors into application storage errors."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StorageFailureException

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def storage_errors(db: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Re-raise database driver failures as StorageFailureException.

    The session is rolled back so it stays usable for the caller.
    IntegrityError passes through so constraint violations can be mapped to
    domain errors.
    """
    try:
        yield
    except IntegrityError:
        await _rollback_quietly(db)
        raise
    except (SQLAlchemyError, TimeoutError, OSError) as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e))
        await _rollback_quietly(db)
        raise StorageFailureException() from e


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as e:
        logger.warning("storage_rollback_failed", error=str(e))
