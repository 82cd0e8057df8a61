"""Database package"""

from billing_engine.db.session import AsyncSessionLocal, engine, get_db, get_session_factory
from billing_engine.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db", "get_session_factory"]
