from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship
import uuid

from .base import Base
from .types import UTCDateTime
from app.utils.clock import utcnow

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), unique=True, nullable=False, index=True)
    username = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=True)
    public_connected = Column(Boolean, nullable=False, default=False)
    google_connected = Column(Boolean, nullable=False, default=False)
    github_connected = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    # Relationships
    identities = relationship("OAuthIdentity", back_populates="user", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "public_connected": self.public_connected,
            "google_connected": self.google_connected,
            "github_connected": self.github_connected,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, username={self.username})>"
