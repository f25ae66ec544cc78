from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from subscription_engine.logging import ConsoleLogFormatter, JsonLogFormatter
from support import bearer


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/subscriptions/status", headers={**bearer("user-1"), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [
        record
        for record in caplog.records
        if record.name == "subscription_engine.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/subscriptions/status"
        and getattr(record, "status_code", None) == 200
        for record in records
    )


def test_lifecycle_logs_carry_operation(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/subscriptions",
        json={"planCode": "free"},
        headers={**bearer("user-1"), "X-Correlation-Id": "corr-create-1"},
    )
    assert response.status_code == 200

    records = [record for record in caplog.records if record.getMessage() == "subscription.created"]
    assert records
    record = records[-1]
    assert record.lifecycle_operation == "create"
    assert record.correlation_id == "corr-create-1"
    assert record.plan_code == "free"


def test_rejections_are_logged_with_code(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    client.post("/api/subscriptions/cancel", json={}, headers=bearer("user-1"))

    assert any(
        record.getMessage() == "lifecycle.rejected" and getattr(record, "code", None) == "NO_ACTIVE_SUBSCRIPTION"
        for record in caplog.records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "subscription_engine.gateway",
            "levelname": "WARNING",
            "msg": "gateway.call_failed",
            "gateway_operation": "cancel_subscription",
            "error": "x" * 600,
            "secret": "do-not-log",
            "correlation_id": "corr-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "gateway.call_failed"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"]["gateway_operation"] == "cancel_subscription"
    assert len(payload["fields"]["error"]) == 500
    assert "secret" not in payload["fields"]


def test_console_formatter_renders_ids_and_fields() -> None:
    record = logging.makeLogRecord(
        {
            "name": "subscription_engine.maintenance",
            "levelname": "INFO",
            "msg": "maintenance.expired",
            "count": 3,
            "token": "do-not-log",
        }
    )

    line = ConsoleLogFormatter().format(record)

    assert "subscription_engine.maintenance [-] maintenance.expired" in line
    assert line.endswith("count=3")
    assert "do-not-log" not in line


def test_access_log_names_the_caller_and_quiets_probes(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="subscription_engine.request")

    client.get("/api/subscriptions/status", headers=bearer("user-7"))
    client.get("/health")

    access = [record for record in caplog.records if record.getMessage() == "http.request"]
    status = next(record for record in access if record.path == "/api/subscriptions/status")
    health = next(record for record in access if record.path == "/health")
    assert status.user_id == "user-7"
    assert status.levelno == logging.INFO
    assert health.user_id is None
    assert health.levelno == logging.DEBUG
