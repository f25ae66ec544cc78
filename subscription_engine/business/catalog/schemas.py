from __future__ import annotations

from typing import Any

from pydantic import Field

from subscription_engine.business.catalog.plans import PlanDefinition
from subscription_engine.core.schemas import CamelModel


class PlanRead(CamelModel):
    code: str
    name: str
    description: str
    tagline: str
    price_monthly: int
    price_yearly: int
    currency: str
    features: list[str] = Field(default_factory=list)
    limits: dict[str, Any] = Field(default_factory=dict)
    trial_days: int = 0
    is_free: bool
    is_featured: bool = False
    display_order: int = 0

    @classmethod
    def from_definition(cls, plan: PlanDefinition) -> PlanRead:
        return cls(
            code=plan.code,
            name=plan.name,
            description=plan.description,
            tagline=plan.tagline,
            price_monthly=plan.price_monthly,
            price_yearly=plan.price_yearly,
            currency=plan.currency,
            features=list(plan.features),
            limits=dict(plan.limits),
            trial_days=plan.trial_days,
            is_free=plan.is_free,
            is_featured=plan.is_featured,
            display_order=plan.display_order,
        )


class PlanListData(CamelModel):
    plans: list[PlanRead]
