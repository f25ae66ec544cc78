from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from subscription_engine.business.catalog.schemas import PlanListData
from subscription_engine.business.payments.gateway import PaymentGateway
from subscription_engine.business.payments.razorpay_gateway import get_gateway
from subscription_engine.business.subscription.schemas import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    CreditBalanceData,
    CurrentSubscriptionData,
    PauseSubscriptionRequest,
    PaymentVerificationData,
    SubscriptionHistoryData,
    SubscriptionMutationData,
    SubscriptionStatusData,
    TransactionHistoryData,
    VerifyPaymentRequest,
    WebhookProcessingResult,
)
from subscription_engine.business.subscription.service import subscription_lifecycle_service
from subscription_engine.business.subscription.verification import payment_verification_service
from subscription_engine.business.subscription.webhooks import webhook_processor
from subscription_engine.context import get_correlation_id
from subscription_engine.core.auth import AuthUser, get_current_user as get_auth_user
from subscription_engine.core.config import get_settings
from subscription_engine.core.database import get_db
from subscription_engine.core.schemas import LifecycleResult
from subscription_engine.platform.security.context import AuthContext

logger = logging.getLogger("subscription_engine.api")

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def get_subscription_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return AuthContext(
        user_id=None if auth_user.is_anonymous else auth_user.sub,
        email=auth_user.email,
        name=auth_user.name,
        contact=auth_user.contact,
        correlation_id=correlation_id,
        roles=[str(item) for item in auth_user.roles],
    )


@router.get("/plans", response_model=LifecycleResult[PlanListData])
def list_plans() -> LifecycleResult[PlanListData]:
    return subscription_lifecycle_service.list_plans()


@router.get("/current", response_model=LifecycleResult[CurrentSubscriptionData])
def get_current_subscription(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> LifecycleResult[CurrentSubscriptionData]:
    return subscription_lifecycle_service.get_current_subscription(db, ctx)


@router.get("/status", response_model=LifecycleResult[SubscriptionStatusData])
def get_subscription_status(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> LifecycleResult[SubscriptionStatusData]:
    return subscription_lifecycle_service.get_subscription_status(db, ctx)


@router.get("/history", response_model=LifecycleResult[SubscriptionHistoryData])
def list_subscription_history(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> LifecycleResult[SubscriptionHistoryData]:
    return subscription_lifecycle_service.list_subscriptions(db, ctx)


@router.get("/transactions", response_model=LifecycleResult[TransactionHistoryData])
def list_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> LifecycleResult[TransactionHistoryData]:
    return subscription_lifecycle_service.get_transaction_history(db, ctx, limit=limit, offset=offset)


@router.get("/credits", response_model=LifecycleResult[CreditBalanceData])
def get_credit_balance(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> LifecycleResult[CreditBalanceData]:
    return subscription_lifecycle_service.get_credit_balance(db, ctx)


@router.post("", response_model=LifecycleResult[SubscriptionMutationData])
@router.post("/", response_model=LifecycleResult[SubscriptionMutationData], include_in_schema=False)
def create_subscription(
    payload: CreateSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.create_subscription(db, ctx, gateway, payload)


@router.post("/upgrade", response_model=LifecycleResult[SubscriptionMutationData])
def upgrade_subscription(
    payload: ChangePlanRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.upgrade_subscription(db, ctx, gateway, payload)


@router.post("/downgrade", response_model=LifecycleResult[SubscriptionMutationData])
def downgrade_subscription(
    payload: ChangePlanRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.downgrade_subscription(db, ctx, gateway, payload)


@router.post("/pause", response_model=LifecycleResult[SubscriptionMutationData])
def pause_subscription(
    payload: PauseSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.pause_subscription(db, ctx, gateway, payload)


@router.post("/resume", response_model=LifecycleResult[SubscriptionMutationData])
def resume_subscription(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.resume_subscription(db, ctx, gateway)


@router.post("/cancel", response_model=LifecycleResult[SubscriptionMutationData])
def cancel_subscription(
    payload: CancelSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[SubscriptionMutationData]:
    return subscription_lifecycle_service.cancel_subscription(db, ctx, gateway, payload)


@router.post("/verify-payment", response_model=LifecycleResult[PaymentVerificationData])
def verify_payment(
    payload: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LifecycleResult[PaymentVerificationData]:
    return payment_verification_service.verify_payment(db, ctx, gateway, payload)


@router.post("/webhooks/razorpay", response_model=WebhookProcessingResult)
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    signature: str | None = Header(default=None, alias="x-razorpay-signature"),
) -> WebhookProcessingResult:
    raw_body = (await request.body()).decode("utf-8")
    try:
        body: dict[str, Any] = json.loads(raw_body or "{}")
    except json.JSONDecodeError:
        return WebhookProcessingResult(success=False, event_type="unknown", reason="invalid payload")
    event_type = str(body.get("event") or "unknown")

    secret = get_settings().razorpay_webhook_secret
    if secret and not (signature and gateway.verify_webhook_signature(raw_body, signature, secret)):
        logger.warning("webhook.invalid_signature", extra={"event_type": event_type})
        return WebhookProcessingResult(success=False, event_type=event_type, reason="invalid signature")

    payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
    return webhook_processor.process(db, event_type, payload)
