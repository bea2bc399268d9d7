"""
SQLAlchemy Enum and column types for the application
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

class LoginMethod(str, enum.Enum):
    PASSWORD = 'password'
    GOOGLE = 'google'
    GITHUB = 'github'

class IdentityProvider(str, enum.Enum):
    GOOGLE = 'google'
    GITHUB = 'github'

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    Some drivers hand back naive values even for timezone=True columns;
    those are read as UTC.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
