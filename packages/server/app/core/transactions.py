"""
Transactional execution with retry on storage conflicts.

Every mutating operation runs inside exactly one database transaction.
Optimistic version mismatches (StaleDataError), lost unique-key races
(TransientConflict) and lock/serialization failures reported by the driver
are treated as transient: the whole operation is replayed in a fresh session
with exponential backoff. Business errors propagate on the first attempt
and the transaction is rolled back.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import Conflict

log = structlog.get_logger()

T = TypeVar("T")

# SQLSTATE codes for serialization failure, deadlock, lock not available
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_TRANSIENT_MESSAGES = ("database is locked", "could not serialize", "deadlock detected")


class TransientConflict(Exception):
    """A concurrent writer won a race that a unique constraint detected.

    Raised by operations whose retry is expected to observe the winner's row.
    """


def is_transient_error(exc: BaseException) -> bool:
    """Return True if exc is a storage conflict worth retrying."""
    if isinstance(exc, (StaleDataError, TransientConflict)):
        return True
    if isinstance(exc, DBAPIError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
        message = str(exc.orig).lower()
        return any(m in message for m in _TRANSIENT_MESSAGES)
    return False


async def run_in_transaction(
    session_factory: sessionmaker,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    name: str,
    max_attempts: int = 5,
    backoff_seconds: float = 0.05,
) -> T:
    """Run operation(session) in one transaction, retrying on conflicts.

    Raises Conflict once max_attempts transient failures have been seen.
    """
    last_exc: BaseException | None = None
    for attempt in range(max_attempts):
        async with session_factory() as session:
            try:
                async with session.begin():
                    result = await operation(session)
                return result
            except (StaleDataError, TransientConflict, DBAPIError) as exc:
                if not is_transient_error(exc):
                    raise
                last_exc = exc

        backoff = backoff_seconds * (2 ** attempt)
        log.warning(
            "transaction.retry",
            operation=name,
            attempt=attempt + 1,
            backoff=backoff,
            error=str(last_exc),
        )
        await asyncio.sleep(backoff)

    log.error("transaction.conflict", operation=name, attempts=max_attempts)
    raise Conflict()
