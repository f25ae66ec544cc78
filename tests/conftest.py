from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from subscription_engine import events
from subscription_engine.business.payments.razorpay_gateway import get_gateway
from subscription_engine.core.config import get_settings
from subscription_engine.core.database import Base, get_db
from subscription_engine.main import app
from subscription_engine.middleware.rate_limit import reset_rate_limiter
from subscription_engine.platform.security.context import AuthContext
from support import FakeGateway


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    for name in ("RAZORPAY_WEBHOOK_SECRET", "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    events.clear_subscribers()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    events.clear_subscribers()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def ctx() -> AuthContext:
    return AuthContext(user_id="user-1", email="user-1@example.com", name="User One", correlation_id="corr-test")



@pytest.fixture()
def client(db_session: Session, gateway: FakeGateway) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
