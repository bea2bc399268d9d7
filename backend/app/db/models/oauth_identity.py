"""
Model for storing third-party identity profiles
"""

from sqlalchemy import Column, String, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
import uuid

from .base import Base
from .types import IdentityProvider, JSONType, UTCDateTime
from app.utils.clock import utcnow

class OAuthIdentity(Base):
    __tablename__ = "oauth_identities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(
        SQLEnum(IdentityProvider, name="identity_provider", values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    provider_user_id = Column(String(255), nullable=False)
    email = Column(String(320), nullable=True)
    display_name = Column(String(255), nullable=True)
    picture = Column(String(1024), nullable=True)
    raw_profile = Column(JSONType, nullable=False, default=dict)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="identities")

    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_oauth_identities_provider_user"),
    )

    def __repr__(self):
        return f"<OAuthIdentity(provider={self.provider}, provider_user_id={self.provider_user_id}, user_id={self.user_id})>"
