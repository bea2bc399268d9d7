"""
Abuse-mitigation tables: password lockout counters and centralized
rate-limit counters.
"""

from sqlalchemy import Column, String, Integer, UniqueConstraint
import uuid

from .base import Base
from .types import UTCDateTime

class FailedLoginAttempt(Base):
    __tablename__ = "failed_login_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=False)
    ip_address = Column(String(64), nullable=False)
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("email", "ip_address", name="uq_failed_login_attempts_email_ip"),
    )

class RateLimitCounter(Base):
    """Per-IP request counter shared by every API instance"""
    __tablename__ = "rate_limits"

    ip_address = Column(String(64), primary_key=True)
    first_request_at = Column(UTCDateTime, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    block_until = Column(UTCDateTime, nullable=True)
    offense_count = Column(Integer, nullable=False, default=0)
    last_blocked_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<RateLimitCounter(ip={self.ip_address}, count={self.request_count}, offenses={self.offense_count})>"
