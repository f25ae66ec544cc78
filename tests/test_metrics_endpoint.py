from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from subscription_engine.core.auth import AuthUser, get_current_user
from subscription_engine.core.config import get_settings
from subscription_engine.main import app


@pytest.fixture()
def metrics_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()


def test_metrics_endpoint_exposes_lifecycle_metrics(client: TestClient, metrics_enabled: None) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    assert client.get("/health").status_code == 200
    assert client.post("/api/subscriptions", json={"planCode": "free"}).status_code == 200

    metrics = client.get("/metrics")

    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    text = metrics.text
    for name in (
        "http_requests_total",
        "http_request_duration_seconds",
        "subscription_operations_total",
        "gateway_calls_total",
        "gateway_fail_open_total",
        "payment_verification_duplicates_total",
        "webhook_events_total",
        "maintenance_rows_total",
    ):
        assert name in text
    assert 'path="/api/subscriptions"' in text
    assert 'operation="create",outcome="ok"' in text


def test_metrics_requires_role(client: TestClient, metrics_enabled: None) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["user"])

    assert client.get("/metrics").status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    assert client.get("/metrics").status_code == 404
