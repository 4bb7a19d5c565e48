"""
Transaction scope over the relational store.

All-or-nothing semantics come from the session transaction; engine errors are
translated to ``StoreConflict`` / ``StoreUnavailable`` so no driver message
ever reaches a caller.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from countersign.common.context import RequestContext
from countersign.common.errors import StoreConflict, StoreUnavailable

logger = logging.getLogger(__name__)


def translate_store_error(error: Exception) -> Exception:
    if isinstance(error, sa_exc.IntegrityError):
        return StoreConflict()
    if isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return StoreUnavailable()
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return StoreUnavailable()
    if isinstance(error, (ConnectionError, OSError)):
        return StoreUnavailable()
    return error


@asynccontextmanager
async def store_errors() -> AsyncIterator[None]:
    try:
        yield
    except (sa_exc.SQLAlchemyError, ConnectionError, OSError) as exc:
        translated = translate_store_error(exc)
        if translated is exc:
            raise
        logger.warning("Store error translated to %s: %s", translated.code.value, type(exc).__name__)
        raise translated from exc


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    ctx: Optional[RequestContext] = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session and commit on success, roll back on any error."""
    if ctx is not None:
        ctx.ensure_active()
    async with store_errors():
        async with session_factory() as session:
            try:
                yield session
                if ctx is not None:
                    ctx.ensure_active()
                await session.commit()
            except BaseException:
                await session.rollback()
                raise


async def flush(db: AsyncSession) -> None:
    async with store_errors():
        await db.flush()
