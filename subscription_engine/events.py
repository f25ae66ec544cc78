"""Lifecycle event envelopes published after a unit of work commits.

Envelopes are plain dicts keyed by ``event_type`` (``subscription.created``,
``subscription.cancelled``...). Subscribers register per event type or with
``"*"`` for every event. The state they describe is already durable, so a
failing subscriber is logged and never undoes or fails the operation.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from subscription_engine.context import get_correlation_id

ALL_EVENTS = "*"

Envelope = dict[str, Any]
EventHandler = Callable[[Envelope], None]

logger = logging.getLogger("subscription_engine.events")

published_events: list[Envelope] = []
_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


def subscribe(event_type: str, handler: EventHandler) -> None:
    if handler not in _subscribers[event_type]:
        _subscribers[event_type].append(handler)


def clear_subscribers() -> None:
    _subscribers.clear()


def publish(envelope: Envelope) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    published_events.append(envelope)

    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return
    logger.info("event.published", extra={"event_type": event_type, "subscription_id": envelope.get("subscription_id")})

    for handler in [*_subscribers.get(event_type, []), *_subscribers.get(ALL_EVENTS, [])]:
        try:
            handler(envelope)
        except Exception as exc:
            logger.exception(
                "event.subscriber_failed",
                extra={"event_type": event_type, "error": f"{type(exc).__name__}: {exc}"},
            )
