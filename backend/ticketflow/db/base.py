"""
Declarative base and shared column mixins.
"""

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase

from ticketflow.core.clock import utcnow


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    # Python-side defaults so values are known after flush without a reload
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
