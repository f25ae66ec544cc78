from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from subscription_engine.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    name: str | None = None
    contact: str | None = None
    claims: dict[str, object] = field(default_factory=dict)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def decode_bearer_claims(request: Request) -> dict[str, Any] | None:
    """Claims of a valid bearer token, or None; bad tokens are treated like no token."""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[len("Bearer "):].strip()
    if not token:
        return None

    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def resolve_subject(request: Request) -> str:
    claims = decode_bearer_claims(request)
    if not claims or claims.get("sub") is None:
        return ANONYMOUS_SUBJECT
    return str(claims["sub"])


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer_claims(request)
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(
        sub=str(claims.get("sub", ANONYMOUS_SUBJECT)),
        roles=[str(role) for role in roles],
        email=claims.get("email"),
        name=claims.get("name"),
        contact=claims.get("phone"),
        claims=dict(claims),
    )
