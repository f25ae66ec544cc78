from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from subscription_engine.business.subscription.access import is_in_grace
from subscription_engine.business.subscription.models import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from subscription_engine.business.subscription.repository import SubscriptionRepository, TransactionRepository
from subscription_engine.business.subscription.schemas import WebhookProcessingResult
from subscription_engine.business.subscription.service import apply_resume, record_transaction
from subscription_engine.core.database import transaction_scope
from subscription_engine.metrics import observe_webhook_event

logger = logging.getLogger("subscription_engine.webhooks")

Payload = dict[str, Any]


def _entity(payload: Payload, name: str) -> Payload:
    wrapper = payload.get(name) or {}
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}


def _from_unix(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _sync_period(subscription: Subscription, entity: Payload) -> None:
    start = _from_unix(entity.get("current_start"))
    end = _from_unix(entity.get("current_end"))
    charge_at = _from_unix(entity.get("charge_at"))
    if start is not None:
        subscription.current_period_start = start
    if end is not None:
        subscription.current_period_end = end
    if charge_at is not None:
        subscription.next_billing_date = charge_at
    elif end is not None:
        subscription.next_billing_date = end


@dataclass(slots=True)
class WebhookProcessor:
    """Applies Razorpay webhook events to the ledger.

    Events arrive at least once and in any order, so each handler checks the
    row's current state and turns repeats into no-ops.
    """

    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    transaction_repository: TransactionRepository = TransactionRepository()

    def process(
        self, session: Session, event_type: str, payload: Payload, now: datetime | None = None
    ) -> WebhookProcessingResult:
        now = now or utcnow()
        handler = self._handlers().get(event_type)
        if handler is None:
            logger.info("webhook.ignored", extra={"event_type": event_type})
            observe_webhook_event("unhandled", "ignored")
            return WebhookProcessingResult(event_type=event_type, action="ignored", reason="event type not handled")

        with transaction_scope(session):
            result = handler(session, event_type, payload, now)

        outcome = result.action if result.success else "rejected"
        observe_webhook_event(event_type, outcome or "ok")
        logger.info(
            "webhook.processed",
            extra={
                "event_type": event_type,
                "status": outcome,
                "subscription_id": str(result.subscription_id) if result.subscription_id else None,
            },
        )
        return result

    def _handlers(self) -> dict[str, Callable[[Session, str, Payload, datetime], WebhookProcessingResult]]:
        return {
            "subscription.authenticated": self._subscription_authenticated,
            "subscription.activated": self._subscription_activated,
            "subscription.charged": self._subscription_charged,
            "subscription.updated": self._subscription_updated,
            "subscription.cancelled": self._subscription_cancelled,
            "subscription.paused": self._subscription_paused,
            "subscription.resumed": self._subscription_resumed,
            "payment.authorized": self._payment_authorized,
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "order.paid": self._order_paid,
        }

    def _find_subscription(self, session: Session, payload: Payload) -> Subscription | None:
        gateway_subscription_id = _entity(payload, "subscription").get("id") or _entity(payload, "payment").get(
            "subscription_id"
        )
        if not gateway_subscription_id:
            return None
        return self.subscription_repository.get_by_gateway_id(session, str(gateway_subscription_id), for_update=True)

    @staticmethod
    def _not_found(event_type: str) -> WebhookProcessingResult:
        return WebhookProcessingResult(success=False, event_type=event_type, reason="subscription not found")

    def _subscription_authenticated(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        if subscription.status != SubscriptionStatus.CREATED:
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)

        subscription.status = SubscriptionStatus.AUTHENTICATED
        _sync_period(subscription, _entity(payload, "subscription"))
        return WebhookProcessingResult(event_type=event_type, action="authenticated", subscription_id=subscription.id)

    def _subscription_activated(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        if subscription.status not in (SubscriptionStatus.CREATED, SubscriptionStatus.AUTHENTICATED):
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)

        subscription.status = SubscriptionStatus.ACTIVE
        _sync_period(subscription, _entity(payload, "subscription"))
        pending = self.transaction_repository.get_pending_for_subscription(session, subscription.id)
        if pending is not None:
            pending.status = TransactionStatus.CAPTURED
        return WebhookProcessingResult(event_type=event_type, action="activated", subscription_id=subscription.id)

    def _subscription_charged(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)

        payment = _entity(payload, "payment")
        payment_id = payment.get("id")
        subscription.failed_payment_count = 0
        subscription.last_payment_attempt = now
        _sync_period(subscription, _entity(payload, "subscription"))

        action = "charged"
        if payment_id and self.transaction_repository.get_captured_by_payment(session, payment_id) is not None:
            action = "duplicate"
        else:
            pending = self._pending_for_charge(session, subscription, payment_id)
            if pending is not None:
                pending.status = TransactionStatus.CAPTURED
                pending.gateway_payment_id = payment_id
                pending.gateway_response = dict(payment) or None
            else:
                record_transaction(
                    session,
                    subscription,
                    transaction_type=TransactionType.SUBSCRIPTION,
                    status=TransactionStatus.CAPTURED,
                    amount=int(payment.get("amount") or subscription.total_amount or 0),
                    method=payment.get("method") or "razorpay_subscription",
                    description="Subscription charge",
                    method_details={"activation_type": "webhook_charge"},
                    gateway_payment_id=payment_id,
                    gateway_order_id=payment.get("order_id"),
                    gateway_response=dict(payment) or None,
                )

        if subscription.status in (SubscriptionStatus.CREATED, SubscriptionStatus.AUTHENTICATED):
            subscription.status = SubscriptionStatus.ACTIVE
        session.flush()
        return WebhookProcessingResult(event_type=event_type, action=action, subscription_id=subscription.id)

    def _pending_for_charge(
        self, session: Session, subscription: Subscription, payment_id: str | None
    ) -> SubscriptionTransaction | None:
        if payment_id:
            for row in self.transaction_repository.list_by_payment(session, payment_id):
                if row.status == TransactionStatus.CREATED:
                    return row
        pending = self.transaction_repository.get_pending_for_subscription(session, subscription.id)
        if pending is not None and pending.gateway_payment_id not in (None, payment_id):
            pending = None
        if pending is None and payment_id:
            # first charge after activation already captured the checkout row
            pending = self.transaction_repository.get_unlinked_capture(session, subscription.id)
        return pending

    def _subscription_updated(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        _sync_period(subscription, _entity(payload, "subscription"))
        return WebhookProcessingResult(event_type=event_type, action="updated", subscription_id=subscription.id)

    def _subscription_cancelled(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        if subscription.status in TERMINAL_STATUSES:
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)
        if is_in_grace(subscription, now):
            return WebhookProcessingResult(event_type=event_type, action="grace_retained", subscription_id=subscription.id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)

        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancel_at_period_end = False
        subscription.auto_renewal = False
        subscription.next_billing_date = None
        subscription.cancelled_at = _from_unix(_entity(payload, "subscription").get("ended_at")) or now
        subscription.cancellation_reason = "gateway_cancelled"
        record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.ADJUSTMENT,
            status=TransactionStatus.CANCELLED,
            amount=0,
            method="cancellation",
            description="Subscription cancelled by the payment gateway",
            method_details={"source": "webhook"},
        )
        return WebhookProcessingResult(event_type=event_type, action="cancelled", subscription_id=subscription.id)

    def _subscription_paused(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        if subscription.status not in ENTITLED_STATUSES:
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)

        subscription.status = SubscriptionStatus.PAUSED
        subscription.paused_at = now
        subscription.pause_count += 1
        record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.ADJUSTMENT,
            status=TransactionStatus.CAPTURED,
            amount=0,
            method="pause",
            description="Subscription paused by the payment gateway",
            method_details={"source": "webhook", "pause_number": subscription.pause_count},
        )
        return WebhookProcessingResult(event_type=event_type, action="paused", subscription_id=subscription.id)

    def _subscription_resumed(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        if subscription.status != SubscriptionStatus.PAUSED:
            return WebhookProcessingResult(event_type=event_type, action="noop", subscription_id=subscription.id)

        paused_for = apply_resume(subscription, now)
        record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.ADJUSTMENT,
            status=TransactionStatus.CAPTURED,
            amount=0,
            method="resume",
            description="Subscription resumed by the payment gateway",
            method_details={"source": "webhook", "paused_seconds": paused_for.total_seconds()},
        )
        return WebhookProcessingResult(event_type=event_type, action="resumed", subscription_id=subscription.id)

    def _payment_authorized(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        payment = _entity(payload, "payment")
        payment_id = payment.get("id")
        if not payment_id:
            return WebhookProcessingResult(success=False, event_type=event_type, reason="payment id missing")
        if self.transaction_repository.list_by_payment(session, payment_id):
            return WebhookProcessingResult(event_type=event_type, action="noop")

        subscription = self._find_subscription(session, payload)
        if subscription is None:
            return self._not_found(event_type)
        checkout = self.transaction_repository.get_unlinked_checkout(session, subscription.id)
        if checkout is not None:
            # the checkout row is this payment; link it rather than recording the amount twice
            checkout.gateway_payment_id = payment_id
            checkout.gateway_order_id = checkout.gateway_order_id or payment.get("order_id")
            checkout.gateway_response = dict(payment)
            return WebhookProcessingResult(event_type=event_type, action="recorded", subscription_id=subscription.id)
        record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.SUBSCRIPTION,
            status=TransactionStatus.CREATED,
            amount=int(payment.get("amount") or 0),
            method=payment.get("method") or "razorpay",
            description="Payment authorized",
            method_details={"source": "webhook"},
            gateway_payment_id=payment_id,
            gateway_order_id=payment.get("order_id"),
            gateway_response=dict(payment),
        )
        return WebhookProcessingResult(event_type=event_type, action="recorded", subscription_id=subscription.id)

    def _payment_captured(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        payment = _entity(payload, "payment")
        payment_id = payment.get("id")
        if not payment_id:
            return WebhookProcessingResult(success=False, event_type=event_type, reason="payment id missing")

        rows = self.transaction_repository.list_by_payment(session, payment_id)
        if any(row.status == TransactionStatus.CAPTURED for row in rows):
            return WebhookProcessingResult(event_type=event_type, action="duplicate", subscription_id=rows[0].subscription_id)
        pending = [row for row in rows if row.status == TransactionStatus.CREATED]
        if not pending:
            return WebhookProcessingResult(event_type=event_type, action="ignored", reason="no matching transaction")

        latest = pending[-1]
        latest.status = TransactionStatus.CAPTURED
        latest.gateway_response = dict(payment)
        return WebhookProcessingResult(event_type=event_type, action="captured", subscription_id=latest.subscription_id)

    def _payment_failed(
        self, session: Session, event_type: str, payload: Payload, now: datetime
    ) -> WebhookProcessingResult:
        payment = _entity(payload, "payment")
        payment_id = payment.get("id")
        rows = self.transaction_repository.list_by_payment(session, payment_id) if payment_id else []

        subscription = self._find_subscription(session, payload)
        if subscription is None and rows:
            subscription = session.get(Subscription, rows[0].subscription_id)
        if subscription is None:
            return self._not_found(event_type)

        subscription.failed_payment_count += 1
        subscription.last_payment_attempt = now
        for row in rows:
            if row.status == TransactionStatus.CREATED:
                row.status = TransactionStatus.FAILED
                row.gateway_response = dict(payment)
        logger.warning(
            "payment.failed",
            extra={
                "subscription_id": str(subscription.id),
                "gateway_payment_id": payment_id,
                "count": subscription.failed_payment_count,
                "error": payment.get("error_description"),
            },
        )
        return WebhookProcessingResult(event_type=event_type, action="payment_failed", subscription_id=subscription.id)

    def _order_paid(self, session: Session, event_type: str, payload: Payload, now: datetime) -> WebhookProcessingResult:
        return WebhookProcessingResult(event_type=event_type, action="acknowledged")


webhook_processor = WebhookProcessor()
