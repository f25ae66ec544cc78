from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from subscription_engine.core.config import get_settings
from subscription_engine.middleware.rate_limit import limited_operation
from support import bearer


@pytest.fixture(autouse=True)
def enable_rate_limit(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_SUBSCRIPTION_MUTATIONS_PER_MINUTE", "2")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_subscription_mutations_are_rate_limited(client: TestClient) -> None:
    headers = {**bearer("user-1"), "X-Correlation-Id": "rate-corr-1"}
    responses = [client.post("/api/subscriptions/cancel", json={}, headers=headers) for _ in range(3)]

    assert [response.status_code for response in responses[:2]] == [404, 404]
    limited = responses[2]
    assert limited.status_code == 429
    assert limited.json() == {
        "success": False,
        "message": "Too many requests. Please slow down and try again shortly.",
        "data": {},
        "code": "RATE_LIMITED",
    }
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.headers["X-Correlation-Id"] == "rate-corr-1"


def test_buckets_are_per_subject_and_operation(client: TestClient) -> None:
    for _ in range(2):
        client.post("/api/subscriptions/cancel", json={}, headers=bearer("user-1"))

    assert client.post("/api/subscriptions/cancel", json={}, headers=bearer("user-2")).status_code == 404
    assert client.post("/api/subscriptions/pause", json={}, headers=bearer("user-1")).status_code == 404


def test_reads_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/api/subscriptions/status", headers=bearer("user-1")) for _ in range(6)]

    assert all(response.status_code == 200 for response in responses)


def test_webhooks_are_exempt(client: TestClient) -> None:
    responses = [
        client.post("/api/subscriptions/webhooks/razorpay", json={"event": "order.paid", "payload": {}})
        for _ in range(5)
    ]

    assert all(response.status_code == 200 for response in responses)
    assert all(response.json()["action"] == "acknowledged" for response in responses)


@pytest.mark.parametrize(
    ("method", "path", "operation"),
    [
        ("POST", "/api/subscriptions", "create"),
        ("POST", "/api/subscriptions/", "create"),
        ("POST", "/api/subscriptions/verify-payment", "verify-payment"),
        ("GET", "/api/subscriptions/status", None),
        ("POST", "/api/subscriptions/webhooks/razorpay", None),
        ("POST", "/health", None),
    ],
)
def test_limited_operation(method: str, path: str, operation: str | None) -> None:
    assert limited_operation(method, path) == operation


def test_rejections_are_counted(client: TestClient) -> None:
    before = REGISTRY.get_sample_value("rate_limited_requests_total", {"operation": "resume"}) or 0

    for _ in range(3):
        client.post("/api/subscriptions/resume", headers=bearer("user-9"))

    assert REGISTRY.get_sample_value("rate_limited_requests_total", {"operation": "resume"}) == before + 1
