from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

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
from subscription_engine.core.config import Settings, get_settings
from subscription_engine.metrics import observe_gateway_call
from subscription_engine.otel import gateway_span

logger = logging.getLogger("subscription_engine.gateway")

ResultT = TypeVar("ResultT")


def classify_gateway_exception(operation: str, exc: Exception) -> GatewayRequestError:
    if isinstance(exc, GatewayRequestError):
        return exc
    if isinstance(exc, BadRequestError):
        return GatewayRequestError(operation, str(exc), status_code=400, retryable=False)
    if isinstance(exc, ServerError):
        return GatewayRequestError(operation, str(exc), status_code=500, retryable=True)
    if isinstance(exc, GatewayError):
        return GatewayRequestError(operation, str(exc), status_code=502, retryable=True)
    if isinstance(exc, requests.exceptions.Timeout):
        return GatewayRequestError(operation, f"timeout: {exc}", retryable=True)
    if isinstance(exc, requests.exceptions.RequestException):
        return GatewayRequestError(operation, f"network error: {exc}", retryable=True)
    if isinstance(exc, (KeyError, TypeError)):
        return GatewayRequestError(operation, f"malformed gateway response: {exc!r}", retryable=False)
    return GatewayRequestError(operation, str(exc) or exc.__class__.__name__, retryable=False)


class RazorpayGateway:
    """`PaymentGateway` over the official Razorpay SDK.

    The SDK client is built on first use so the application can boot without
    credentials; the first real call then fails with GATEWAY_NOT_CONFIGURED.
    """

    def __init__(self, settings: Settings | None = None, client: razorpay.Client | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self.settings.razorpay_key_id and self.settings.razorpay_key_secret)

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            settings = self.settings
            if not settings.razorpay_key_id or not settings.razorpay_key_secret:
                raise GatewayRequestError("client", "razorpay credentials are not configured", retryable=False)
            self._client = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
        return self._client

    def _call(
        self,
        operation: str,
        request: Callable[[], dict[str, Any]],
        parse: Callable[[dict[str, Any]], ResultT],
        **attributes: Any,
    ) -> ResultT:
        """Run one SDK request and map its response; a malformed response fails like a rejected request."""
        started = time.perf_counter()
        with gateway_span(operation, **attributes):
            try:
                result = parse(request())
            except Exception as exc:
                error = classify_gateway_exception(operation, exc)
                observe_gateway_call(operation, "retryable_error" if error.retryable else "error", time.perf_counter() - started)
                logger.warning(
                    "gateway.call_failed",
                    extra={"gateway_operation": operation, "status_code": error.status_code, "error": error.message},
                )
                raise error from exc
        observe_gateway_call(operation, "ok", time.perf_counter() - started)
        return result

    def create_customer(self, profile: CustomerProfile) -> CustomerCreated:
        data: dict[str, Any] = {"name": profile.name, "fail_existing": "0"}
        if profile.email:
            data["email"] = profile.email
        if profile.contact:
            data["contact"] = profile.contact
        if profile.notes:
            data["notes"] = dict(profile.notes)

        return self._call(
            "create_customer",
            lambda: self.client.customer.create(data=data),
            lambda raw: CustomerCreated(customer_id=str(raw["id"]), raw=raw),
        )

    def create_subscription(
        self,
        plan_id: str,
        customer_id: str,
        total_count: int,
        notes: dict[str, str] | None = None,
    ) -> SubscriptionCreated:
        data: dict[str, Any] = {
            "plan_id": plan_id,
            "customer_id": customer_id,
            "customer_notify": 1,
            "quantity": 1,
            "total_count": total_count,
            "notes": dict(notes or {}),
        }
        return self._call(
            "create_subscription",
            lambda: self.client.subscription.create(data=data),
            lambda raw: SubscriptionCreated(
                subscription_id=str(raw["id"]),
                status=str(raw.get("status", "created")),
                short_url=raw.get("short_url"),
                raw=raw,
            ),
            plan_id=plan_id,
        )

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = False) -> SubscriptionCancelled:
        data = {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0}
        return self._call(
            "cancel_subscription",
            lambda: self.client.subscription.cancel(subscription_id, data=data),
            lambda raw: SubscriptionCancelled(
                subscription_id=subscription_id, status=str(raw.get("status", "cancelled")), raw=raw
            ),
            subscription_id=subscription_id,
        )

    def pause_subscription(self, subscription_id: str) -> SubscriptionPaused:
        return self._call(
            "pause_subscription",
            lambda: self.client.subscription.pause(subscription_id, data={"pause_at": "now"}),
            lambda raw: SubscriptionPaused(subscription_id=subscription_id, status=str(raw.get("status", "paused")), raw=raw),
            subscription_id=subscription_id,
        )

    def resume_subscription(self, subscription_id: str) -> SubscriptionResumed:
        return self._call(
            "resume_subscription",
            lambda: self.client.subscription.resume(subscription_id, data={"resume_at": "now"}),
            lambda raw: SubscriptionResumed(subscription_id=subscription_id, status=str(raw.get("status", "active")), raw=raw),
            subscription_id=subscription_id,
        )

    def fetch_payment(self, payment_id: str) -> PaymentFetched:
        def parse(raw: dict[str, Any]) -> PaymentFetched:
            return PaymentFetched(
                payment_id=str(raw.get("id", payment_id)),
                status=str(raw.get("status", "")),
                amount=int(raw.get("amount") or 0),
                currency=str(raw.get("currency") or "INR"),
                method=raw.get("method"),
                order_id=raw.get("order_id"),
                subscription_id=raw.get("subscription_id"),
                raw=raw,
            )

        return self._call("fetch_payment", lambda: self.client.payment.fetch(payment_id), parse, payment_id=payment_id)

    def refund_payment(self, payment_id: str, amount: int | None = None) -> RefundCreated:
        data: dict[str, Any] = {} if amount is None else {"amount": amount}
        return self._call(
            "refund_payment",
            lambda: self.client.payment.refund(payment_id, data),
            lambda raw: RefundCreated(
                refund_id=str(raw["id"]),
                payment_id=payment_id,
                amount=int(raw.get("amount") or amount or 0),
                status=str(raw.get("status", "processed")),
                raw=raw,
            ),
            payment_id=payment_id,
        )

    def verify_webhook_signature(self, body: str, signature: str, secret: str) -> bool:
        utility = razorpay.Utility(self._client) if self._client is not None else razorpay.Utility()
        try:
            return bool(utility.verify_webhook_signature(body, signature, secret))
        except SignatureVerificationError:
            return False


_gateway: RazorpayGateway | None = None


def get_gateway() -> RazorpayGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway()
    return _gateway
