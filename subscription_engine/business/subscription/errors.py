from __future__ import annotations

from typing import Any


class LifecycleError(Exception):
    """Base for every failure a lifecycle operation reports to its caller."""

    kind = "LifecycleError"
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "data": self.data, "code": self.code}


class AuthenticationRequired(LifecycleError):
    kind = "AuthenticationRequired"
    status_code = 401
    default_code = "AUTHENTICATION_REQUIRED"


class InvalidRequest(LifecycleError):
    kind = "InvalidRequest"
    status_code = 400
    default_code = "INVALID_REQUEST"


class NotFound(LifecycleError):
    kind = "NotFound"
    status_code = 404
    default_code = "NOT_FOUND"


class AlreadyInState(LifecycleError):
    kind = "AlreadyInState"
    status_code = 409
    default_code = "INVALID_STATE_TRANSITION"


class ConfigurationError(LifecycleError):
    kind = "ConfigurationError"
    status_code = 500
    default_code = "PLAN_CONFIGURATION_ERROR"


class GatewayTransientError(LifecycleError):
    kind = "GatewayTransientError"
    status_code = 502
    default_code = "SUBSCRIPTION_CREATION_FAILED"


class PaymentNotCaptured(LifecycleError):
    kind = "PaymentNotCaptured"
    status_code = 402
    default_code = "PAYMENT_NOT_CAPTURED"
