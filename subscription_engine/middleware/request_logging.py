from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from subscription_engine.metrics import observe_http_request, resolve_http_path_label

# Probes hit these constantly; they are still counted but only logged at DEBUG.
QUIET_PATHS = frozenset({"/health", "/metrics"})

logger = logging.getLogger("subscription_engine.request")


def _subject(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    if context is None or not context.is_authenticated:
        return None
    return context.subject


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line and HTTP metrics for every request, including ones that raise."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception:
            logger.error("http.error", exc_info=True, extra={"method": request.method, "path": request.url.path})
            raise
        finally:
            duration = time.perf_counter() - started
            # The route template is only known after routing, hence resolved here.
            path = resolve_http_path_label(request)
            observe_http_request(method=request.method, path=path, status=status_code, duration=duration)
            logger.log(
                _level_for(path, status_code),
                "http.request",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": round(duration * 1000, 2),
                    "user_id": _subject(request),
                },
            )
