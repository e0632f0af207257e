"""Database module.

Exports:
- Base: SQLAlchemy declarative base
- db_session / get_session_factory: async session management
- insert_for: dialect-aware upsert construct
"""

from speakforme.db.models import Base
from speakforme.db.session import db_session, get_session_factory
from speakforme.db.upsert import insert_for

__all__ = ["Base", "db_session", "get_session_factory", "insert_for"]
