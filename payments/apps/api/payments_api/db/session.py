"""Database session management.

The engine is built lazily on first use from Settings.from_env(), so importing
this module never opens a connection or requires a driver.
"""

from typing import Generator, Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from payments_api.config.env import Settings
from payments_api.db.engine import build_engine, build_sessionmaker

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker[Session]] = None


def get_engine() -> Engine:
    """Get the process-wide engine (built on first call)."""
    global _engine, _session_factory
    if _engine is None:
        _engine = build_engine(Settings.from_env().database_url)
        _session_factory = build_sessionmaker(_engine)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Get the process-wide sessionmaker."""
    if _session_factory is None:
        get_engine()
    assert _session_factory is not None
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
