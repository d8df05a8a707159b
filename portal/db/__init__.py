"""
Database package for SQLAlchemy setup, session management, and base models.
"""

from portal.db.base import Base, UTCDateTime, utcnow
from portal.db.session import get_session, get_sessionmaker, transaction_session

__all__ = [
    "Base",
    "UTCDateTime",
    "utcnow",
    "get_session",
    "get_sessionmaker",
    "transaction_session",
]
