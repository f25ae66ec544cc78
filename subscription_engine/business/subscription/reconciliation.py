"""Failure policy between gateway calls and the local ledger.

Gateway creates are fail-closed: they run inside the unit of work and a
failure aborts it. Cancel, pause and resume are fail-open: they run after the
local transition has committed, and a failure is logged and counted only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from subscription_engine.business.payments.gateway import GatewayRequestError, is_benign_cancellation_error
from subscription_engine.business.subscription.errors import ConfigurationError, GatewayTransientError
from subscription_engine.metrics import observe_gateway_fail_open

logger = logging.getLogger("subscription_engine.reconciliation")

ResultT = TypeVar("ResultT")


def call_fail_closed(
    operation: str,
    fn: Callable[[], ResultT],
    *,
    error_code: str = "SUBSCRIPTION_CREATION_FAILED",
    message: str = "Failed to create subscription with the payment gateway",
) -> ResultT:
    try:
        return fn()
    except GatewayRequestError as exc:
        if exc.operation == "client":
            logger.error("gateway.not_configured", extra={"gateway_operation": operation, "error": exc.message})
            raise ConfigurationError("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED") from exc
        logger.warning(
            "gateway.fail_closed",
            extra={"gateway_operation": operation, "status_code": exc.status_code, "error": exc.message},
        )
        raise GatewayTransientError(message, code=error_code) from exc


def call_fail_open(operation: str, fn: Callable[[], Any], *, gateway_subscription_id: str | None = None) -> Any | None:
    try:
        return fn()
    except GatewayRequestError as exc:
        if operation == "cancel_subscription" and is_benign_cancellation_error(exc):
            logger.info(
                "gateway.cancel_not_needed",
                extra={"gateway_operation": operation, "gateway_subscription_id": gateway_subscription_id},
            )
            observe_gateway_fail_open(operation, "benign")
            return None

        logger.warning(
            "gateway.fail_open",
            extra={
                "gateway_operation": operation,
                "gateway_subscription_id": gateway_subscription_id,
                "status_code": exc.status_code,
                "error": exc.message,
            },
        )
        observe_gateway_fail_open(operation, "retryable" if exc.retryable else "rejected")
        return None


@dataclass
class _DeferredCall:
    operation: str
    fn: Callable[[], Any]
    gateway_subscription_id: str | None


@dataclass
class AfterCommitCalls:
    """Gateway side effects queued during a unit of work, run once it has committed."""

    calls: list[_DeferredCall] = field(default_factory=list)

    def add(self, operation: str, fn: Callable[[], Any], *, gateway_subscription_id: str | None = None) -> None:
        self.calls.append(_DeferredCall(operation, fn, gateway_subscription_id))

    def run(self) -> None:
        pending, self.calls = self.calls, []
        for call in pending:
            call_fail_open(call.operation, call.fn, gateway_subscription_id=call.gateway_subscription_id)
