"""Bounded retry for transient data-store errors.

Only connection-level failures are retried.  Integrity and logic errors propagate
on the first attempt.
"""

import asyncio
import os
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")

DB_MAX_RETRIES = max(0, int(os.getenv("DB_MAX_RETRIES", "2")))
DB_RETRY_BACKOFF_MS = max(10, int(os.getenv("DB_RETRY_BACKOFF_MS", "200")))


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


async def with_db_retry(
    session: AsyncSession,
    op: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int | None = None,
    backoff_ms: int | None = None,
) -> T:
    """Run ``op``; on a transient error roll back, wait and run it again."""
    retries = DB_MAX_RETRIES if max_retries is None else max(0, max_retries)
    backoff = DB_RETRY_BACKOFF_MS if backoff_ms is None else backoff_ms
    max_attempts = retries + 1

    for attempt in range(1, max_attempts + 1):
        try:
            return await op()
        except Exception as exc:
            if not is_transient(exc) or attempt >= max_attempts:
                raise
            await session.rollback()
            wait_ms = backoff * (2 ** (attempt - 1))
            logger.warning(
                "[db] {} transient error attempt {}/{}; retry in {}ms: {}",
                label, attempt, max_attempts, wait_ms, exc,
            )
            await asyncio.sleep(wait_ms / 1000)

    raise RuntimeError(f"{label} exhausted retries")
