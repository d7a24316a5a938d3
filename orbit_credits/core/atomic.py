"""Atomic units: Mongo client-session transactions, or a bare pass-through when disabled."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo.errors import PyMongoError

from orbit_credits.core.config import get_settings
from orbit_credits.core.exceptions import PersistenceConflictError
from orbit_credits.core.logging import get_logger

log = get_logger(__name__)

TRANSIENT_LABEL = "TransientTransactionError"


def utcnow() -> datetime:
    """Naive UTC now; Mongo hands back naive UTC datetimes so comparisons stay consistent."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def transactions_enabled() -> bool:
    return get_settings().mongodb_transactions


@asynccontextmanager
async def atomic(
    session: AsyncIOMotorClientSession | None = None,
) -> AsyncIterator[AsyncIOMotorClientSession | None]:
    """
    Run the block as one atomic unit, or join the outer unit when `session` is given.
    Yields the session to pass as `session=` on every write, or None when transactions
    are disabled (callers then rely on single-document conditional updates and
    compensate the second write themselves).

    Transient transaction errors surface as PersistenceConflictError: nothing was
    applied, so the caller may retry the whole unit.
    """
    if session is not None:
        yield session
        return
    if not transactions_enabled():
        yield None
        return
    from orbit_credits.db.init import get_client

    client = get_client()
    async with await client.start_session() as own_session:
        try:
            async with own_session.start_transaction():
                yield own_session
        except PyMongoError as e:
            if e.has_error_label(TRANSIENT_LABEL):
                log.warning("transaction_conflict", error=str(e))
                raise PersistenceConflictError() from e
            raise
