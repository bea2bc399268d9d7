from sqlalchemy import Column, String, Integer, Text
import uuid

from .base import Base
from .types import UTCDateTime

class SessionRecord(Base):
    """Second-factor session paired 1:1 with a LoginRecord through session_id.

    Never expires on its own; it becomes unreachable once the owning login is
    logged out or expired.
    """
    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    session_token = Column(String(128), unique=True, nullable=False)
    user_agent = Column(Text, nullable=False, default="")
    language = Column(String(255), nullable=False, default="")
    platform = Column(String(64), nullable=False, default="")
    screen_resolution = Column(String(32), nullable=False, default="")
    timezone_offset = Column(Integer, nullable=True)
    generated_at = Column(UTCDateTime, nullable=False)
    last_access = Column(UTCDateTime, nullable=False)

    def __repr__(self):
        return f"<SessionRecord(session_id={self.session_id}, last_access={self.last_access})>"
