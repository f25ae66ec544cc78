from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity handed to lifecycle operations.

    `user_id` is the authenticated subject; an empty or anonymous subject is
    rejected by the services before any database access.
    """

    user_id: str | None
    email: str | None = None
    name: str | None = None
    contact: str | None = None
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id) and self.user_id != "anonymous"

    def customer_profile_name(self) -> str:
        return self.name or self.email or str(self.user_id)
