"""
Per-IP request throttling

Each client IP gets a fixed counting window. Exceeding the request limit
inside a window blocks the IP for ``block_seconds * multiplier`` where the
multiplier is the number of blocks the IP collected recently, capped at
``max_multiplier``. An IP that stays unblocked for ``offense_reset_seconds``
starts over at a multiplier of one.

InMemoryRateLimiter keeps its counters in the process, so every API instance
enforces its own limit. DatabaseRateLimiter keeps them in the ``rate_limits``
table, so instances sharing a database share the limit.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import ConfigurationError
from app.db.models.security import RateLimitCounter
from app.db.utils import retry_database_operation
from app.utils.clock import Clock, utcnow
from app.utils.logging import get_logger

logger = get_logger(__name__)

@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_seconds: int = 0
    blocked_until: Optional[datetime] = None

@dataclass(frozen=True)
class RatePolicy:
    """Limits shared by every limiter implementation"""
    max_requests: int = 50
    window: timedelta = timedelta(seconds=15)
    block: timedelta = timedelta(minutes=5)
    max_multiplier: int = 12
    offense_reset: timedelta = timedelta(days=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RatePolicy":
        return cls(
            max_requests=settings.rate_limit_requests,
            window=timedelta(seconds=settings.rate_limit_window_seconds),
            block=timedelta(seconds=settings.rate_limit_block_seconds),
            max_multiplier=settings.rate_limit_max_multiplier,
            offense_reset=timedelta(seconds=settings.rate_limit_offense_reset_seconds),
        )

@dataclass
class CounterState:
    """In-process counter; mirrors the columns of RateLimitCounter"""
    first_request_at: datetime
    request_count: int = 0
    block_until: Optional[datetime] = None
    offense_count: int = 0
    last_blocked_at: Optional[datetime] = None

def _retry_after(block_until: datetime, now: datetime) -> int:
    return max(1, int((block_until - now).total_seconds() + 0.999))

def apply_hit(state, now: datetime, policy: RatePolicy) -> RateDecision:
    """
    Count one request against state and decide whether it may proceed

    state is anything with the CounterState attributes; it is mutated in
    place.
    """
    if state.block_until is not None and now < state.block_until:
        return RateDecision(False, _retry_after(state.block_until, now), state.block_until)

    if state.request_count == 0 or now - state.first_request_at > policy.window:
        state.first_request_at = now
        state.request_count = 1
        return RateDecision(True)

    state.request_count += 1
    if state.request_count <= policy.max_requests:
        return RateDecision(True)

    if state.last_blocked_at is not None and now - state.last_blocked_at > policy.offense_reset:
        state.offense_count = 0
    state.offense_count += 1
    multiplier = min(state.offense_count, policy.max_multiplier)
    state.block_until = now + policy.block * multiplier
    state.last_blocked_at = now
    return RateDecision(False, _retry_after(state.block_until, now), state.block_until)

class RateLimiter(ABC):
    """Decides whether a request from ip may proceed"""

    def __init__(self, policy: Optional[RatePolicy] = None, clock: Clock = utcnow):
        self.policy = policy or RatePolicy()
        self.clock = clock

    @abstractmethod
    async def hit(self, ip: str, route: str = "") -> RateDecision:
        """Record a request and return the decision"""

    def _log_block(self, ip: str, route: str, decision: RateDecision, offenses: int) -> None:
        logger.warning(
            f"Blocked IP {ip} on route '{route}' until {decision.blocked_until.isoformat()} "
            f"(offense {offenses})",
            extra={"client_ip": ip, "path": route}
        )

class InMemoryRateLimiter(RateLimiter):
    """Process-local counters for single instance deployments"""

    def __init__(self, policy: Optional[RatePolicy] = None, clock: Clock = utcnow):
        super().__init__(policy, clock)
        self._counters: Dict[str, CounterState] = {}

    async def hit(self, ip: str, route: str = "") -> RateDecision:
        now = self.clock()
        state = self._counters.get(ip)
        if state is None:
            state = CounterState(first_request_at=now)
            self._counters[ip] = state

        was_blocked = state.block_until is not None and now < state.block_until
        decision = apply_hit(state, now, self.policy)
        if not decision.allowed and not was_blocked:
            self._log_block(ip, route, decision, state.offense_count)
        return decision

    def prune(self, idle_for: timedelta) -> int:
        """Forget IPs with no activity or block for idle_for"""
        cutoff = self.clock() - idle_for
        stale = [
            ip for ip, state in self._counters.items()
            if state.first_request_at < cutoff
            and (state.block_until is None or state.block_until < cutoff)
        ]
        for ip in stale:
            del self._counters[ip]
        return len(stale)

class DatabaseRateLimiter(RateLimiter):
    """Counters shared through the rate_limits table"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        policy: Optional[RatePolicy] = None,
        clock: Clock = utcnow
    ):
        super().__init__(policy, clock)
        self.session_factory = session_factory

    async def hit(self, ip: str, route: str = "") -> RateDecision:
        async def _attempt() -> RateDecision:
            async with self.session_factory() as db:
                return await self._hit(db, ip, route)

        return await retry_database_operation(
            _attempt, max_retries=2, initial_delay=0.01, retry_on=(IntegrityError,)
        )

    async def _hit(self, db: AsyncSession, ip: str, route: str) -> RateDecision:
        now = self.clock()
        try:
            stmt = select(RateLimitCounter).where(RateLimitCounter.ip_address == ip).with_for_update()
            counter = (await db.execute(stmt)).scalar_one_or_none()
            if counter is None:
                counter = RateLimitCounter(
                    ip_address=ip,
                    first_request_at=now,
                    request_count=0,
                    offense_count=0
                )
                db.add(counter)

            was_blocked = counter.block_until is not None and now < counter.block_until
            decision = apply_hit(counter, now, self.policy)
            offenses = counter.offense_count
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if not decision.allowed and not was_blocked:
            self._log_block(ip, route, decision, offenses)
        return decision

RATE_LIMITER_BACKENDS = ("memory", "database")

def build_rate_limiter(
    settings: Settings,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    clock: Clock = utcnow
) -> RateLimiter:
    """Limiter for the configured RATE_LIMIT_BACKEND"""
    policy = RatePolicy.from_settings(settings)
    backend = settings.rate_limit_backend.lower()
    if backend == "memory":
        return InMemoryRateLimiter(policy, clock)
    if backend == "database":
        if session_factory is None:
            raise ConfigurationError("RATE_LIMIT_BACKEND=database needs a database session factory")
        return DatabaseRateLimiter(session_factory, policy, clock)
    raise ConfigurationError(f"Unknown RATE_LIMIT_BACKEND '{settings.rate_limit_backend}'")
