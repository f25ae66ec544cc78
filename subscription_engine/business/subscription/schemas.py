from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from subscription_engine.business.catalog.schemas import PlanRead
from subscription_engine.core.schemas import CamelModel

LifecycleAction = Literal[
    "created",
    "extended",
    "replaced",
    "upgraded",
    "downgraded",
    "cancelled",
    "paused",
    "resumed",
]


class CreateSubscriptionRequest(CamelModel):
    plan_code: str | None = None
    billing_cycle: str = "monthly"


class ChangePlanRequest(CamelModel):
    new_plan_code: str | None = None


class PauseSubscriptionRequest(CamelModel):
    pause_duration_days: int | None = None


class CancelSubscriptionRequest(CamelModel):
    immediate: bool = False
    reason: str | None = Field(default=None, max_length=255)


class VerifyPaymentRequest(CamelModel):
    payment_id: str | None = None
    subscription_id: uuid.UUID | None = None


class SubscriptionRead(CamelModel):
    id: uuid.UUID
    plan_code: str
    billing_cycle: str
    status: str
    access_state: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    next_billing_date: datetime | None = None
    total_amount: int
    currency: str
    auto_renewal: bool
    cancel_at_period_end: bool
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    paused_at: datetime | None = None
    resume_at: datetime | None = None
    pause_count: int
    failed_payment_count: int
    gateway_subscription_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TransactionRead(CamelModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    plan_code: str | None = None
    transaction_type: str
    amount: int
    net_amount: int
    currency: str
    status: str
    method: str | None = None
    method_details: dict[str, Any] | None = None
    gateway_payment_id: str | None = None
    description: str | None = None
    created_at: datetime


class ProrationRead(CamelModel):
    is_upgrade: bool
    charge_amount: int
    credit_amount: int
    days_remaining: int
    total_days: int


class CreditRead(CamelModel):
    id: uuid.UUID
    amount: int
    remaining_amount: int
    currency: str
    source_subscription_id: uuid.UUID | None = None
    description: str | None = None
    is_active: bool
    expires_at: datetime | None = None
    created_at: datetime


class SubscriptionMutationData(CamelModel):
    action: LifecycleAction
    subscription: SubscriptionRead
    transaction: TransactionRead | None = None
    replaced_subscription_id: uuid.UUID | None = None
    checkout_url: str | None = None
    proration: ProrationRead | None = None
    credit: CreditRead | None = None


class CurrentSubscriptionData(CamelModel):
    has_subscription: bool
    subscription: SubscriptionRead | None = None
    plan: PlanRead | None = None


class SubscriptionStatusData(CamelModel):
    has_subscription: bool
    plan_code: str
    status: str | None = None
    access_state: str
    is_active: bool
    is_cancelled_but_active: bool
    will_renew: bool
    access_ends_at: datetime | None = None
    current_period_end: datetime | None = None
    features: list[str] = Field(default_factory=list)
    limits: dict[str, Any] = Field(default_factory=dict)


class SubscriptionHistoryData(CamelModel):
    subscriptions: list[SubscriptionRead]


class TransactionHistoryData(CamelModel):
    transactions: list[TransactionRead]
    total: int
    limit: int
    offset: int


class CreditBalanceData(CamelModel):
    balance: int
    currency: str
    credits: list[CreditRead]


class PaymentVerificationData(CamelModel):
    is_duplicate: bool
    payment_id: str
    payment_status: str
    transaction: TransactionRead
    subscription: SubscriptionRead | None = None


class WebhookProcessingResult(CamelModel):
    success: bool = True
    event_type: str
    action: str | None = None
    reason: str | None = None
    subscription_id: uuid.UUID | None = None
