from __future__ import annotations

import logging

import pytest
from sqlalchemy.orm import Session

from subscription_engine import events
from subscription_engine.business.subscription.schemas import CreateSubscriptionRequest
from subscription_engine.business.subscription.service import subscription_lifecycle_service
from subscription_engine.platform.security.context import AuthContext
from support import FakeGateway


def test_subscribers_receive_matching_and_wildcard_events() -> None:
    created: list[str] = []
    everything: list[str] = []
    events.subscribe("subscription.created", lambda envelope: created.append(envelope["subscription_id"]))
    events.subscribe(events.ALL_EVENTS, lambda envelope: everything.append(envelope["event_type"]))

    events.publish({"event_type": "subscription.created", "subscription_id": "s-1"})
    events.publish({"event_type": "subscription.cancelled", "subscription_id": "s-1"})

    assert created == ["s-1"]
    assert everything == ["subscription.created", "subscription.cancelled"]


def test_failing_subscriber_does_not_fail_the_operation(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway, caplog: pytest.LogCaptureFixture
) -> None:
    def broken(envelope):
        raise RuntimeError("downstream offline")

    events.subscribe("subscription.created", broken)
    caplog.set_level(logging.ERROR, logger="subscription_engine.events")

    result = subscription_lifecycle_service.create_subscription(
        db_session, ctx, gateway, CreateSubscriptionRequest(plan_code="free")
    )

    assert result.success is True
    assert any(record.getMessage() == "event.subscriber_failed" for record in caplog.records)


def test_envelope_without_type_is_recorded_but_not_dispatched() -> None:
    seen: list[dict] = []
    events.subscribe(events.ALL_EVENTS, seen.append)

    events.publish({"subscription_id": "s-2"})

    assert events.published_events[-1]["subscription_id"] == "s-2"
    assert seen == []
