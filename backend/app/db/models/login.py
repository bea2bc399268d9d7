from sqlalchemy import Column, String, Boolean, Index, Enum as SQLEnum, text
import uuid

from .base import Base
from .types import LoginMethod, JSONType, UTCDateTime

class LoginRecord(Base):
    """One row per login event.

    At most one row per user has is_logged_in set; the partial unique index
    enforces it in the store as well as in LoginRegistry.
    """
    __tablename__ = "manage_logins"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)
    session_id = Column(String(64), nullable=False, index=True)
    device_info = Column(JSONType, nullable=False, default=dict)
    method = Column(
        SQLEnum(LoginMethod, name="login_method", values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    auth_token = Column(String(512), nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    ip_address = Column(String(64), nullable=True)
    is_logged_in = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_manage_logins_user_token", "user_id", "auth_token"),
        Index(
            "uq_manage_logins_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_logged_in"),
            sqlite_where=text("is_logged_in = 1"),
        ),
    )

    def is_expired(self, now) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return f"<LoginRecord(user_id={self.user_id}, session_id={self.session_id}, method={self.method}, is_logged_in={self.is_logged_in})>"
