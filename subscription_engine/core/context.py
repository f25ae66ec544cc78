from __future__ import annotations

import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from subscription_engine.core.auth import ANONYMOUS_SUBJECT, resolve_subject
from subscription_engine.core.config import get_settings

MAX_USER_AGENT_LENGTH = 256


@dataclass(frozen=True)
class RequestContext:
    """Per-request facts shared by the middlewares behind the correlation layer.

    ``request_id`` identifies this single hop while ``correlation_id`` may be
    shared with the caller and with gateway callbacks.
    """

    request_id: str
    correlation_id: str
    subject: str
    client_ip: str | None
    user_agent: str | None
    currency: str

    @property
    def is_authenticated(self) -> bool:
        return self.subject != ANONYMOUS_SUBJECT


def build_request_context(request: Request) -> RequestContext:
    user_agent = request.headers.get("user-agent")
    return RequestContext(
        request_id=uuid.uuid4().hex,
        correlation_id=getattr(request.state, "correlation_id", None) or "",
        subject=resolve_subject(request),
        client_ip=request.client.host if request.client else None,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
        currency=get_settings().ledger_currency,
    )


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        context = build_request_context(request)
        request.state.context = context
    return context


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = get_request_context(request)
        response = await call_next(request)
        response.headers["x-request-id"] = context.request_id
        return response
