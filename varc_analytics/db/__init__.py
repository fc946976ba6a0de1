"""Persistence: SQLAlchemy models, async engine and upsert helpers."""
