"""
Time helpers shared by the auth components.

Components take a ``clock`` callable so tests can move time forward without
sleeping.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

def utcnow() -> datetime:
    """Get current UTC datetime with timezone info"""
    return datetime.now(timezone.utc)

def to_epoch_ms(moment: datetime) -> int:
    """Milliseconds since the epoch for an aware datetime"""
    return int(moment.timestamp() * 1000)

def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
