from subscription_engine.business.catalog.plans import (
    BILLING_CYCLES,
    FREE_PLAN_CODE,
    PLANS,
    PlanCatalog,
    PlanDefinition,
    plan_catalog,
)
from subscription_engine.business.catalog.schemas import PlanListData, PlanRead

__all__ = [
    "BILLING_CYCLES",
    "FREE_PLAN_CODE",
    "PLANS",
    "PlanCatalog",
    "PlanDefinition",
    "plan_catalog",
    "PlanListData",
    "PlanRead",
]
