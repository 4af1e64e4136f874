"""
Idempotency guard for pay-and-convert.

One conversion_attempts row per client-supplied key:
  PENDING    another request holds the key        -> ConversionInProgress
  COMPLETED  cached response is replayed verbatim
  FAILED     stale row is deleted, a new attempt may start
The unique index on idempotency_key decides races between first-time
requests; the loser gets DuplicateConversion and is never retried here.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.models import ConversionAttempt
from school_ops.db.repository import (
    delete_conversion_attempt,
    get_attempt_by_key,
    try_create_conversion_attempt,
    update_conversion_attempt,
)

logger = logging.getLogger(__name__)


class ConversionInProgress(Exception):
    """Another request is processing this key."""


class DuplicateConversion(Exception):
    """Lost the insert race for this key."""


async def admit(session: AsyncSession, idempotency_key: str) -> dict | None:
    """
    Check the key before any work is done.

    Returns the cached response for a completed attempt, None when a fresh
    attempt may proceed. Raises ConversionInProgress for a PENDING attempt.
    """
    attempt = await get_attempt_by_key(session, idempotency_key)
    if attempt is None:
        return None

    if attempt.status == "COMPLETED":
        if attempt.result is None:
            raise DuplicateConversion(idempotency_key)
        logger.info("Replaying completed conversion for key %s", idempotency_key)
        return attempt.result

    if attempt.status == "PENDING":
        raise ConversionInProgress(idempotency_key)

    # FAILED: release the key so this request can retry
    logger.info("Clearing failed conversion attempt %s for retry", attempt.id)
    await delete_conversion_attempt(session, attempt.id)
    return None


async def claim(session: AsyncSession, idempotency_key: str, **fields) -> ConversionAttempt:
    """Insert the PENDING row that acts as the lock for this key."""
    attempt = await try_create_conversion_attempt(
        session, idempotency_key=idempotency_key, **fields
    )
    if attempt is None:
        raise DuplicateConversion(idempotency_key)
    return attempt


async def mark_completed(
    session_factory: async_sessionmaker[AsyncSession],
    attempt_id: str,
    *,
    student_id: str,
    result: dict,
) -> None:
    async with session_factory() as session:
        await update_conversion_attempt(
            session,
            attempt_id,
            status="COMPLETED",
            result=result,
            student_id=student_id,
        )
        await session.commit()


async def mark_failed(
    session_factory: async_sessionmaker[AsyncSession],
    attempt_id: str,
    error_message: str,
) -> None:
    async with session_factory() as session:
        await update_conversion_attempt(
            session,
            attempt_id,
            status="FAILED",
            error_message=error_message,
        )
        await session.commit()
