"""
User model with secure password storage and login-lockout state.

Key design decisions:
- `failed_login_attempts` is only ever changed by single UPDATE statements
  (see services/credential_store.py) so concurrent failed logins cannot
  under-count
- `account_locked` is meaningful together with `last_login_attempt`: the lock
  window is measured from the attempt that crossed the threshold
- Users are never physically deleted
"""

from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, CheckConstraint
from sqlalchemy.orm import relationship

from ticketflow.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    account_locked = Column(Boolean, default=False, nullable=False)
    last_login_attempt = Column(DateTime, nullable=True)

    sessions = relationship("UserSession", back_populates="user", lazy="raise")

    __table_args__ = (
        CheckConstraint("failed_login_attempts >= 0", name="check_failed_attempts_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, verified={self.email_verified})>"
