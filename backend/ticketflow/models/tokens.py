"""
Single-use tokens for email verification and password reset.

Both tables keep at most one unused token per user: issuing a new token marks
the previous ones used first. Reset tokens also carry requester IP and
User-Agent for audit, and the (user_id, created_at) index backs the hourly
rate-limit count.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index

from ticketflow.core.clock import utcnow
from ticketflow.db.base import Base


class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token = Column(String(255), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_email_verification_tokens_expires_at", "expires_at"),
    )


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    token = Column(String(255), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # Rate limiting counts requests per user in a trailing window
        Index("ix_password_reset_tokens_user_created", "user_id", "created_at"),
    )
