"""Scheduler test fixtures: in-memory SQLite and a clean shutdown flag."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from payments_api.db.engine import build_sessionmaker
from payments_api.db.models import Base
from payments_api.pricing import load_plan_catalog
from payments_scheduler.shutdown import shutdown_event


@pytest.fixture(autouse=True)
def clear_shutdown():
    shutdown_event.clear()
    yield
    shutdown_event.clear()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield build_sessionmaker(engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def catalog():
    return load_plan_catalog()


@pytest.fixture
def notifier():
    return AsyncMock()
