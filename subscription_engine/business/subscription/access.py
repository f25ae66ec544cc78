"""Read-time access derivation.

Nothing here touches the database session; the same rules back the status
endpoint, the webhook processor and the SQL current-row clause.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import ColumnElement, and_, or_

from subscription_engine.business.subscription.models import LIVE_STATUSES, Subscription, SubscriptionStatus


class AccessState(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    PAUSED = "paused"
    PENDING = "pending"


def is_in_grace(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.status == SubscriptionStatus.CANCELLED
        and bool(subscription.cancel_at_period_end)
        and subscription.current_period_end is not None
        and subscription.current_period_end > now
    )


def is_current(subscription: Subscription, now: datetime) -> bool:
    return subscription.status in LIVE_STATUSES or is_in_grace(subscription, now)


def current_subscription_clause(now: datetime) -> ColumnElement[bool]:
    return or_(
        Subscription.status.in_(sorted(LIVE_STATUSES)),
        and_(
            Subscription.status == SubscriptionStatus.CANCELLED,
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end.is_not(None),
            Subscription.current_period_end > now,
        ),
    )


def derive_access_state(subscription: Subscription | None, now: datetime) -> AccessState:
    if subscription is None:
        return AccessState.EXPIRED

    status = subscription.status
    if status == SubscriptionStatus.ACTIVE:
        return AccessState.ACTIVE
    if status == SubscriptionStatus.AUTHENTICATED:
        period_end = subscription.current_period_end
        if period_end is not None and period_end <= now:
            return AccessState.EXPIRED
        return AccessState.ACTIVE
    if status == SubscriptionStatus.PAUSED:
        return AccessState.PAUSED
    if status == SubscriptionStatus.CREATED:
        return AccessState.PENDING
    if is_in_grace(subscription, now):
        return AccessState.GRACE_PERIOD
    return AccessState.EXPIRED


def grants_access(state: AccessState) -> bool:
    return state in (AccessState.ACTIVE, AccessState.GRACE_PERIOD)


def will_renew(subscription: Subscription) -> bool:
    return (
        bool(subscription.auto_renewal)
        and not subscription.cancel_at_period_end
        and subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.AUTHENTICATED)
    )
