"""Database helpers: health probing and retrying of contended writes"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Type
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import text
from app.utils.logging import get_logger
from app.core.exceptions import DatabaseError

logger = get_logger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

@dataclass
class DatabaseHealth:
    healthy: bool
    error: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> dict:
        if self.healthy:
            return {"status": "connected", "latency": self.latency_ms}
        return {"status": "error", "error": self.error}

async def check_database_connection(
    session: AsyncSession,
    timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS
) -> DatabaseHealth:
    """
    Run SELECT 1 and time it

    Args:
        session: SQLAlchemy async session
        timeout: Seconds before the check counts as failed

    Returns:
        DatabaseHealth with the round-trip latency in milliseconds when healthy
    """
    start_time = time.perf_counter()
    try:
        await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=timeout)
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        await session.commit()
        return DatabaseHealth(healthy=True, latency_ms=latency_ms)
    except asyncio.TimeoutError:
        msg = f"Database health check timed out after {timeout:g} seconds"
        logger.error(msg)
        await session.rollback()
        return DatabaseHealth(healthy=False, error=msg)
    except Exception as e:
        msg = f"Database health check failed: {str(e)}"
        logger.error(msg, exc_info=True)
        await session.rollback()
        return DatabaseHealth(healthy=False, error=msg)

async def retry_database_operation(
    operation: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
) -> Any:
    """
    Retry a database operation with exponential backoff

    Args:
        operation: Async function to retry
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries in seconds
        retry_on: Exception types that trigger a retry; anything else propagates

    Returns:
        Result of the operation

    Raises:
        DatabaseError: If all retries fail
    """
    last_error = None
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            if attempt > 0:
                logger.warning(f"Retrying database operation (attempt {attempt}/{max_retries})")
            return await operation()

        except retry_on as e:
            last_error = e
            if attempt < max_retries:
                logger.warning(
                    f"Database operation failed (attempt {attempt + 1}/{max_retries}): {str(e)}"
                )
                # Wait with exponential backoff
                await asyncio.sleep(delay)
                delay *= 2
            else:
                logger.error(
                    f"Database operation failed after {max_retries} retries: {str(e)}",
                    exc_info=True
                )
                raise DatabaseError(
                    f"Database operation failed after {max_retries} retries",
                    details={"last_attempt": attempt}
                ) from last_error
