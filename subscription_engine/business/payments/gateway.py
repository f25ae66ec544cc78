from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

BENIGN_CANCEL_MARKERS = ("no billing cycle is going on",)


class GatewayRequestError(Exception):
    """A gateway call failed; `retryable` marks network and 5xx failures."""

    def __init__(self, operation: str, message: str, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        return f"{self.operation}: {self.message}"


def is_benign_cancellation_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "message", None) or exc).lower()
    return any(marker in message for marker in BENIGN_CANCEL_MARKERS)


@dataclass(frozen=True, slots=True)
class CustomerProfile:
    name: str
    email: str | None = None
    contact: str | None = None
    notes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CustomerCreated:
    customer_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscriptionCreated:
    subscription_id: str
    status: str
    short_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscriptionCancelled:
    subscription_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscriptionPaused:
    subscription_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscriptionResumed:
    subscription_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PaymentFetched:
    payment_id: str
    status: str
    amount: int
    currency: str
    method: str | None = None
    order_id: str | None = None
    subscription_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"


@dataclass(frozen=True, slots=True)
class RefundCreated:
    refund_id: str
    payment_id: str
    amount: int
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_customer(self, profile: CustomerProfile) -> CustomerCreated: ...

    def create_subscription(
        self,
        plan_id: str,
        customer_id: str,
        total_count: int,
        notes: dict[str, str] | None = None,
    ) -> SubscriptionCreated: ...

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = False) -> SubscriptionCancelled: ...

    def pause_subscription(self, subscription_id: str) -> SubscriptionPaused: ...

    def resume_subscription(self, subscription_id: str) -> SubscriptionResumed: ...

    def fetch_payment(self, payment_id: str) -> PaymentFetched: ...

    def refund_payment(self, payment_id: str, amount: int | None = None) -> RefundCreated: ...

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> bool: ...
