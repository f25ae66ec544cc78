from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from subscription_engine.context import get_correlation_id
from subscription_engine.core.config import get_settings
from subscription_engine.core.context import get_request_context
from subscription_engine.metrics import observe_rate_limited

SUBSCRIPTIONS_PREFIX = "/api/subscriptions"
# Gateway callbacks retry on their own schedule and must never be throttled.
EXEMPT_SUFFIXES = ("/webhooks/razorpay",)
MUTATING_METHODS = frozenset({"POST", "PATCH", "DELETE"})
WINDOW_SECONDS = 60

RATE_LIMITED_BODY = {
    "success": False,
    "message": "Too many requests. Please slow down and try again shortly.",
    "data": {},
    "code": "RATE_LIMITED",
}

logger = logging.getLogger("subscription_engine.rate_limit")


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per (subject, operation) token buckets refilled continuously over a window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, subject: str, operation: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = time.monotonic()
        rate = capacity / float(window_seconds)

        with self._lock:
            bucket = self._buckets.setdefault((subject, operation), _Bucket(tokens=float(capacity), refilled_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now

            if bucket.tokens < 1.0:
                return False, max(1, math.ceil((1.0 - bucket.tokens) / rate))

            bucket.tokens -= 1.0
            return True, 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def limited_operation(method: str, path: str) -> str | None:
    """Bucket name for a throttled subscription mutation, None when the request is not throttled.

    ``POST /api/subscriptions`` is the create operation; every other mutation is
    keyed by its trailing path segment (``cancel``, ``pause``, ``verify-payment``...).
    """
    path = path.rstrip("/")
    if method.upper() not in MUTATING_METHODS or not path.startswith(SUBSCRIPTIONS_PREFIX):
        return None
    if path.endswith(EXEMPT_SUFFIXES):
        return None
    return path[len(SUBSCRIPTIONS_PREFIX):].strip("/") or "create"


class SubscriptionMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        operation = None if settings.rate_limit_disabled else limited_operation(request.method, request.url.path)
        if operation is None:
            return await call_next(request)

        context = get_request_context(request)
        allowed, retry_after = _limiter.take(
            subject=context.subject,
            operation=operation,
            capacity=settings.rate_limit_subscription_mutations_per_minute,
            window_seconds=WINDOW_SECONDS,
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited(operation)
        logger.warning(
            "subscription.rate_limited",
            extra={"user_id": context.subject, "path": request.url.path, "code": "RATE_LIMITED"},
        )
        response = JSONResponse(status_code=429, content=RATE_LIMITED_BODY)
        response.headers["Retry-After"] = str(retry_after)
        correlation_id = get_correlation_id() or context.correlation_id
        if correlation_id:
            response.headers["X-Correlation-Id"] = correlation_id
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
