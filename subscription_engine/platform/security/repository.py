from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from subscription_engine.platform.security.context import AuthContext


class OwnerScopedRepository:
    """Row-level scoping: a caller only ever sees rows whose owner column is its subject."""

    resource = ""
    model: Any = None
    owner_column = "user_id"

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return query.where(getattr(self.model, self.owner_column) == ctx.user_id)

    def owns(self, record: Any, ctx: AuthContext) -> bool:
        return record is not None and getattr(record, self.owner_column, None) == ctx.user_id
