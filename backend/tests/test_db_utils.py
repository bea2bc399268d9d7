"""Tests for database connection management and background task helpers"""

import asyncio
from contextlib import suppress
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import DatabaseError
from app.db.utils import check_database_connection, retry_database_operation
from app.services.background_tasks import BackgroundTaskManager
from app.services.cleanup import run_periodic_cleanup
from app.services.rate_limiter import InMemoryRateLimiter, RatePolicy

async def test_database_health_check(db_session):
    """Test database health check functionality"""
    health = await check_database_connection(db_session)
    assert health.healthy is True
    assert health.error is None
    assert health.latency_ms >= 0

    # Test with a mocked session that raises an exception
    mock_session = MagicMock(spec=AsyncSession)
    mock_session.execute.side_effect = SQLAlchemyError("Test error")

    async def rollback():
        return None
    mock_session.rollback = rollback

    health = await check_database_connection(mock_session)
    assert health.healthy is False
    assert "Test error" in health.error
    assert health.to_dict() == {"status": "error", "error": health.error}

async def test_retry_mechanism():
    """Test database operation retry mechanism"""
    attempt_count = 0

    async def mock_operation():
        nonlocal attempt_count
        attempt_count += 1
        if attempt_count < 2:
            raise OperationalError("statement", {}, Exception("Connection error"))
        return "success"

    result = await retry_database_operation(mock_operation, max_retries=3, initial_delay=0.01)
    assert result == "success"
    assert attempt_count == 2

    attempt_count = 0

    async def failing_operation():
        nonlocal attempt_count
        attempt_count += 1
        raise OperationalError("statement", {}, Exception("Persistent error"))

    with pytest.raises(DatabaseError) as exc:
        await retry_database_operation(failing_operation, max_retries=2, initial_delay=0.01)
    assert "after 2 retries" in str(exc.value)
    assert attempt_count == 3  # Initial + 2 retries
    # Driver text stays in the logs
    assert exc.value.details == {"last_attempt": 2}
    assert "Persistent error" not in str(exc.value)

async def test_retry_only_on_listed_errors():
    """Errors outside retry_on propagate on the first attempt"""
    attempt_count = 0

    async def conflicting_operation():
        nonlocal attempt_count
        attempt_count += 1
        raise ValueError("not a database error")

    with pytest.raises(ValueError):
        await retry_database_operation(conflicting_operation, initial_delay=0.01, retry_on=(IntegrityError,))
    assert attempt_count == 1

async def test_background_tasks_drain():
    manager = BackgroundTaskManager()
    done = []

    async def work(value):
        await asyncio.sleep(0.01)
        done.append(value)

    async def broken():
        raise RuntimeError("boom")

    manager.add_task(work(1))
    manager.add_task(broken())
    manager.add_task(work(2))
    assert manager.pending == 3

    await manager.drain()

    assert sorted(done) == [1, 2]
    assert manager.pending == 0

async def test_periodic_cleanup_prunes_memory_counters(session_factory, clock):
    limiter = InMemoryRateLimiter(RatePolicy(), clock)
    await limiter.hit("10.0.0.1")
    clock.advance(days=2)

    task = asyncio.create_task(run_periodic_cleanup(
        session_factory, limiter, interval_seconds=3600, retention=timedelta(days=1), clock=clock
    ))
    await asyncio.sleep(0.01)
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task

    assert limiter.prune(timedelta(days=1)) == 0

async def test_background_tasks_drain_timeout_cancels():
    manager = BackgroundTaskManager()

    async def stuck():
        await asyncio.sleep(60)

    task = manager.add_task(stuck(), name="stuck")
    await manager.drain(timeout=0.01)

    assert task.cancelled()
    assert manager.pending == 0
