"""Database engine builder.

- Default pool: QueuePool with pool_pre_ping (long-lived API + scheduler processes)
- ENV: PAYMENTS_DB_POOL=queuepool|nullpool (nullpool for external poolers)
- SQLite URLs (tests/local) get check_same_thread=False
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: str) -> Engine:
    """Build SQLAlchemy engine.

    Args:
        database_url: Database URL (resolved by Settings)

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: Empty URL or invalid PAYMENTS_DB_POOL value.
    """
    if not database_url:
        raise ValueError("database_url is required")

    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    else:
        connect_args["application_name"] = os.getenv(
            "PAYMENTS_DB_APPLICATION_NAME", "classraum-payments"
        )

    pool_mode = os.getenv("PAYMENTS_DB_POOL", "queuepool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            database_url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid PAYMENTS_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(database_url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build sessionmaker with autocommit=False, autoflush=False."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
