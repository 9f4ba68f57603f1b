"""Pytest configuration and fixtures.

Every test runs against a fresh in-memory SQLite database (StaticPool, one
shared connection) built from the ORM metadata. Redis is never contacted:
the app gets no-op limiter/lock implementations and a mock notifier.
"""

import time
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from payments_api.billing.signature import compute_signature
from payments_api.config.env import Settings
from payments_api.db.engine import build_sessionmaker
from payments_api.db.models import Base
from payments_api.db.session import get_db
from payments_api.main import create_app
from payments_api.pricing import PlanCatalogModel, load_plan_catalog
from payments_api.rate_limiter import NoOpRateLimiter, NoOpSyncLock

TEST_WEBHOOK_SECRET = "test_webhook_secret_12345"
TEST_ADMIN_TOKEN = "test-admin-token-abcdef"


def sign_headers(
    raw_body: bytes,
    *,
    webhook_id: str = "msg_test_0001",
    timestamp: Optional[int] = None,
    secret: str = TEST_WEBHOOK_SECRET,
) -> dict[str, str]:
    """Standard Webhooks headers for raw_body."""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = compute_signature(secret, webhook_id, ts, raw_body)
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": ts,
        "webhook-signature": f"v1,{signature}",
        "Content-Type": "application/json",
    }


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return build_sessionmaker(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        env="test",
        portone_webhook_secret=TEST_WEBHOOK_SECRET,
        admin_token=TEST_ADMIN_TOKEN,
        database_url="sqlite:///:memory:",
        json_logs=False,
    )


@pytest.fixture
def catalog() -> PlanCatalogModel:
    return load_plan_catalog()


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def app(settings, notifier, catalog, session_factory):
    """App wired to the test database (get_db override + module-level getters patched)."""
    application = create_app(
        settings,
        rate_limiter=NoOpRateLimiter(quota=10, window=60),
        api_rate_limiter=NoOpRateLimiter(quota=60, window=60),
        sync_lock=NoOpSyncLock(),
        notifier=notifier,
        catalog=catalog,
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = override_get_db
    with patch("payments_api.routers.webhooks.get_db", override_get_db), patch(
        "payments_api.routers.sync.get_session_factory", return_value=session_factory
    ):
        yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sign():
    """sign(raw_body, webhook_id=..., timestamp=..., secret=...) -> headers."""
    return sign_headers
