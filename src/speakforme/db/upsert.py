"""Dialect-aware INSERT constructs for conflict handling.

PostgreSQL and SQLite both support ``ON CONFLICT`` but expose it through
their own ``insert`` constructs. Callers ask for the one matching the
session's bind and use ``on_conflict_do_update`` / ``on_conflict_do_nothing``
without caring which engine is underneath.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model: Any) -> Any:
    """Return ``insert(model)`` for the dialect *session* is bound to."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT is not supported for dialect {dialect!r}")
