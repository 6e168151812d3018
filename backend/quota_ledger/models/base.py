"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
ensures consistency across all ledger tables.
"""

from datetime import datetime
from sqlalchemy import Column, DateTime
from sqlalchemy.orm import DeclarativeBase


# Storage unit sizes used across the ledger.
BYTES_PER_MB = 1024 ** 2
BYTES_PER_GB = 1024 ** 3


class Base(DeclarativeBase):
    """Declarative base for all ledger models."""

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


def enum_values(enum_cls) -> list[str]:
    """
    Persist enum values (lowercase) rather than member names.

    WHY: Status strings are shared with the migration and the API schemas;
    storing ``"dns_pending"`` instead of ``"DNS_PENDING"`` keeps all three aligned.
    """
    return [member.value for member in enum_cls]
