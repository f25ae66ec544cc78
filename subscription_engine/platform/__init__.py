from subscription_engine.platform.security.context import AuthContext
from subscription_engine.platform.security.repository import OwnerScopedRepository

__all__ = [
    "AuthContext",
    "OwnerScopedRepository",
]
