from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from subscription_engine.core.config import Settings, get_settings

BillingCycle = Literal["monthly", "yearly"]

BILLING_CYCLES: tuple[str, ...] = ("monthly", "yearly")
FREE_PLAN_CODE = "free"


@dataclass(frozen=True, slots=True)
class PlanDefinition:
    code: str
    name: str
    description: str
    tagline: str
    price_monthly: int
    price_yearly: int
    currency: str = "INR"
    features: tuple[str, ...] = ()
    limits: dict[str, Any] = field(default_factory=dict)
    trial_days: int = 0
    is_active: bool = True
    is_featured: bool = False
    display_order: int = 0

    @property
    def is_free(self) -> bool:
        return self.price_monthly == 0 and self.price_yearly == 0

    def price_for(self, billing_cycle: str) -> int:
        return self.price_yearly if billing_cycle == "yearly" else self.price_monthly


PLANS: dict[str, PlanDefinition] = {
    "free": PlanDefinition(
        code="free",
        name="Free",
        description="Get started with our basic features",
        tagline="Perfect for trying out the platform",
        price_monthly=0,
        price_yearly=0,
        features=("Basic dashboard access", "Up to 5 projects", "Community support", "Standard API access"),
        limits={"projects": 5, "api_calls": 1000, "storage_gb": 1, "users": 1},
        display_order=1,
    ),
    "pro": PlanDefinition(
        code="pro",
        name="Pro",
        description="Advanced features for growing businesses",
        tagline="Most popular choice for professionals",
        price_monthly=99900,
        price_yearly=999900,
        features=(
            "Everything in Free",
            "Unlimited projects",
            "Priority support",
            "Advanced analytics",
            "API integrations",
            "Custom branding",
        ),
        limits={"projects": -1, "api_calls": 10000, "storage_gb": 10, "users": 5, "integrations": 10},
        is_featured=True,
        display_order=2,
    ),
    "plus": PlanDefinition(
        code="plus",
        name="Plus",
        description="Enterprise-grade features and support",
        tagline="For teams that need maximum power",
        price_monthly=199900,
        price_yearly=1999900,
        features=(
            "Everything in Pro",
            "Unlimited users",
            "24/7 dedicated support",
            "Advanced security",
            "Custom integrations",
            "SLA guarantee",
            "White-label options",
        ),
        limits={
            "projects": -1,
            "api_calls": 100000,
            "storage_gb": 100,
            "users": -1,
            "integrations": -1,
            "sla": True,
        },
        display_order=3,
    ),
}


def normalize_plan_code(plan_code: str | None) -> str:
    return (plan_code or "").strip().lower()


class PlanCatalog:
    """Read-only plan lookup plus the mapping onto gateway plan ids."""

    def __init__(self, plans: dict[str, PlanDefinition] | None = None, settings: Settings | None = None) -> None:
        self._plans = dict(PLANS if plans is None else plans)
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def is_valid_plan_code(self, plan_code: str | None) -> bool:
        return normalize_plan_code(plan_code) in self._plans

    @staticmethod
    def is_valid_billing_cycle(billing_cycle: str | None) -> bool:
        return billing_cycle in BILLING_CYCLES

    def get_plan_by_code(self, plan_code: str | None) -> PlanDefinition | None:
        return self._plans.get(normalize_plan_code(plan_code))

    def get_active_plans(self) -> list[PlanDefinition]:
        return sorted((plan for plan in self._plans.values() if plan.is_active), key=lambda plan: plan.display_order)

    def get_plan_price(self, plan_code: str, billing_cycle: str) -> int | None:
        plan = self.get_plan_by_code(plan_code)
        return None if plan is None else plan.price_for(billing_cycle)

    def is_free_plan(self, plan_code: str) -> bool:
        plan = self.get_plan_by_code(plan_code)
        return plan is not None and plan.is_free

    def get_gateway_plan_id(self, plan_code: str, billing_cycle: str) -> str | None:
        code = normalize_plan_code(plan_code)
        if code not in self._plans or billing_cycle not in BILLING_CYCLES:
            return None
        value = getattr(self.settings, f"razorpay_plan_{code}_{billing_cycle}", None)
        return value or None


plan_catalog = PlanCatalog()
