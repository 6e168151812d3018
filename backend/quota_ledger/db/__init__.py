"""Database package"""

from quota_ledger.db.session import AsyncSessionLocal, engine, get_db
from quota_ledger.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db"]
