"""
Durable session record.

Holds a keyed hash of the bearer token, never the token itself. The Redis
mirror (services/session_store.py) carries the same token hash and relies on
key TTL instead of the `is_active` flag.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from ticketflow.core.clock import utcnow
from ticketflow.db.base import Base


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String(128), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    device_info = Column(String(500), nullable=True)
    ip_address = Column(String(45), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="sessions")

    __table_args__ = (
        Index("ix_user_sessions_expires_at", "expires_at"),
    )

    def is_expired(self, now) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        return f"<UserSession(id={self.id}, user={self.user_id}, active={self.is_active})>"
