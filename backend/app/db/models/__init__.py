"""
SQLAlchemy models for the application
"""

from .types import (
    LoginMethod,
    IdentityProvider,
    UTCDateTime
)

from .base import Base
from .user import User
from .login import LoginRecord
from .session import SessionRecord
from .oauth_identity import OAuthIdentity
from .security import FailedLoginAttempt, RateLimitCounter

__all__ = [
    'LoginMethod',
    'IdentityProvider',
    'UTCDateTime',
    'Base',
    'User',
    'LoginRecord',
    'SessionRecord',
    'OAuthIdentity',
    'FailedLoginAttempt',
    'RateLimitCounter'
]
