"""Dialect-aware INSERT for ON CONFLICT statements (PostgreSQL / SQLite)."""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, model: Any):
    """Return an INSERT construct supporting on_conflict_do_nothing().

    Raises:
        RuntimeError: Dialect without ON CONFLICT support
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported database dialect for ON CONFLICT insert: {dialect}")
