from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from subscription_engine.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
# Accepted from callers that only send a request id.
FALLBACK_HEADER = "x-request-id"
MAX_CORRELATION_ID_LENGTH = 128
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:\-]+$")


def accept_correlation_id(raw: str | None) -> str | None:
    """Caller-supplied id, truncated; None when it is empty or would be unsafe to echo into logs and headers."""
    if not raw:
        return None
    candidate = raw.strip()[:MAX_CORRELATION_ID_LENGTH]
    if not candidate or not _SAFE_ID.match(candidate):
        return None
    return candidate


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = (
            accept_correlation_id(request.headers.get(CORRELATION_HEADER))
            or accept_correlation_id(request.headers.get(FALLBACK_HEADER))
            or str(uuid.uuid4())
        )
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
