from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    """Generate a primary key for rows created by this service."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Declarative base for all analytics tables."""
