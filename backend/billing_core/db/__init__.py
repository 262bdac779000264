"""Database package"""

from billing_core.db.session import AsyncSessionLocal, engine, get_db
from billing_core.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db"]
