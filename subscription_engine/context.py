from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
lifecycle_operation_var: ContextVar[str | None] = ContextVar("lifecycle_operation", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_lifecycle_operation(value: str | None) -> Token[str | None]:
    return lifecycle_operation_var.set(value)


def reset_lifecycle_operation(token: Token[str | None]) -> None:
    lifecycle_operation_var.reset(token)


def get_lifecycle_operation() -> str | None:
    return lifecycle_operation_var.get()

