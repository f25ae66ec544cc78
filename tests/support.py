from __future__ import annotations

import hashlib
import hmac
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any

from jose import jwt
from sqlalchemy import update
from sqlalchemy.orm import Session

from subscription_engine.business.payments.gateway import (
    CustomerCreated,
    CustomerProfile,
    GatewayRequestError,
    PaymentFetched,
    RefundCreated,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionPaused,
    SubscriptionResumed,
)
from subscription_engine.business.subscription.models import Subscription, SubscriptionStatus

T0 = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


def activate(session: Session, subscription_id: uuid.UUID, status: str = SubscriptionStatus.ACTIVE) -> None:
    """Stand-in for the gateway activation webhook."""
    session.execute(update(Subscription).where(Subscription.id == subscription_id).values(status=status))
    session.commit()


def sign(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def bearer(sub: str = "user-1", **claims: Any) -> dict[str, str]:
    token = jwt.encode({"sub": sub, **claims}, "replace-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


class FakeGateway:
    """In-memory PaymentGateway that records every call and fails on demand."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, GatewayRequestError] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def fail(
        self,
        operation: str,
        message: str = "gateway unavailable",
        *,
        status_code: int | None = 502,
        retryable: bool = True,
        reported_as: str | None = None,
    ) -> None:
        self.failures[operation] = GatewayRequestError(
            reported_as or operation, message, status_code=status_code, retryable=retryable
        )

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [args for name, args in self.calls if name == operation]

    def _record(self, operation: str, **args: Any) -> None:
        self.calls.append((operation, args))
        if operation in self.failures:
            raise self.failures[operation]

    def create_customer(self, profile: CustomerProfile) -> CustomerCreated:
        self._record("create_customer", profile=profile)
        customer_id = f"cust_{next(self._ids)}"
        return CustomerCreated(customer_id=customer_id, raw={"id": customer_id, "name": profile.name})

    def create_subscription(
        self, plan_id: str, customer_id: str, total_count: int, notes: dict[str, str] | None = None
    ) -> SubscriptionCreated:
        self._record(
            "create_subscription", plan_id=plan_id, customer_id=customer_id, total_count=total_count, notes=notes
        )
        subscription_id = f"sub_{next(self._ids)}"
        return SubscriptionCreated(
            subscription_id=subscription_id,
            status="created",
            short_url=f"https://rzp.io/i/{subscription_id}",
            raw={"id": subscription_id, "plan_id": plan_id, "status": "created"},
        )

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = False) -> SubscriptionCancelled:
        self._record("cancel_subscription", subscription_id=subscription_id, cancel_at_cycle_end=cancel_at_cycle_end)
        return SubscriptionCancelled(subscription_id=subscription_id, status="cancelled")

    def pause_subscription(self, subscription_id: str) -> SubscriptionPaused:
        self._record("pause_subscription", subscription_id=subscription_id)
        return SubscriptionPaused(subscription_id=subscription_id, status="paused")

    def resume_subscription(self, subscription_id: str) -> SubscriptionResumed:
        self._record("resume_subscription", subscription_id=subscription_id)
        return SubscriptionResumed(subscription_id=subscription_id, status="active")

    def fetch_payment(self, payment_id: str) -> PaymentFetched:
        self._record("fetch_payment", payment_id=payment_id)
        raw = {"id": payment_id, "status": "captured", "amount": 99900, "currency": "INR", "method": "card"}
        raw.update(self.payments.get(payment_id, {}))
        return PaymentFetched(
            payment_id=payment_id,
            status=raw["status"],
            amount=int(raw["amount"]),
            currency=raw["currency"],
            method=raw.get("method"),
            order_id=raw.get("order_id"),
            subscription_id=raw.get("subscription_id"),
            raw=raw,
        )

    def refund_payment(self, payment_id: str, amount: int | None = None) -> RefundCreated:
        self._record("refund_payment", payment_id=payment_id, amount=amount)
        return RefundCreated(refund_id=f"rfnd_{next(self._ids)}", payment_id=payment_id, amount=amount or 0, status="processed")

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> bool:
        return hmac.compare_digest(sign(body, secret), signature)
