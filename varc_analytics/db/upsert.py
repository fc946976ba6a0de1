"""
Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL and SQLite both support ``ON CONFLICT DO UPDATE ... WHERE`` and
``RETURNING``; SQLAlchemy exposes them through dialect-specific ``insert``
constructs with the same API.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, model: Any):
    """Return an ``insert(model)`` that supports ``on_conflict_do_update``."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")
