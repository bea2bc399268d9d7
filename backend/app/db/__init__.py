"""
Database package initialization.
Exposes models and database utilities.
"""

from .models.base import Base
from .models import *
from .database import (
    build_engine,
    build_session_factory,
    get_db
)

__all__ = [
    'Base',
    'build_engine',
    'build_session_factory',
    'get_db'
]
