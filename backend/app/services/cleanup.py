"""
Cleanup service for maintaining rate-limit counters
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.security import RateLimitCounter
from app.services.rate_limiter import InMemoryRateLimiter, RateLimiter
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

async def purge_stale_rate_limits(db: AsyncSession, older_than: datetime) -> int:
    """
    Delete counters with no request and no block since older_than

    Args:
        db: Database session
        older_than: Cutoff time

    Returns:
        Number of rows deleted
    """
    stmt = delete(RateLimitCounter).where(
        RateLimitCounter.first_request_at < older_than,
        or_(RateLimitCounter.block_until.is_(None), RateLimitCounter.block_until < older_than),
        or_(RateLimitCounter.last_blocked_at.is_(None), RateLimitCounter.last_blocked_at < older_than)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    purged = result.rowcount or 0
    if purged:
        logger.info(f"Purged {purged} stale rate limit counters")
    return purged

async def run_periodic_cleanup(
    db_pool,
    rate_limiter: Optional[RateLimiter] = None,
    interval_seconds: int = 3600,
    retention: timedelta = timedelta(days=1),
    clock: Clock = utcnow
):
    """
    Run periodic cleanup tasks

    Args:
        db_pool: Database session pool
        rate_limiter: Active limiter; in-memory counters are pruned in place
        interval_seconds: Interval between cleanup runs in seconds
        retention: How long an idle counter is kept
        clock: Time source
    """
    while True:
        try:
            if isinstance(rate_limiter, InMemoryRateLimiter):
                rate_limiter.prune(retention)
            else:
                async with db_pool() as db:
                    await purge_stale_rate_limits(db, clock() - retention)
        except Exception as e:
            logger.error(f"Error in periodic cleanup: {str(e)}", exc_info=True)

        await asyncio.sleep(interval_seconds)
