from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from subscription_engine.business.payments.gateway import PaymentFetched, PaymentGateway
from subscription_engine.business.subscription.errors import (
    AuthenticationRequired,
    InvalidRequest,
    NotFound,
    PaymentNotCaptured,
)
from subscription_engine.business.subscription.models import (
    Subscription,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from subscription_engine.business.subscription.reconciliation import call_fail_closed
from subscription_engine.business.subscription.repository import SubscriptionRepository, TransactionRepository
from subscription_engine.business.subscription.schemas import PaymentVerificationData, VerifyPaymentRequest
from subscription_engine.business.subscription.service import (
    observed_operation,
    record_transaction,
    to_subscription_read,
    to_transaction_read,
)
from subscription_engine.core.database import transaction_scope
from subscription_engine.core.schemas import LifecycleResult
from subscription_engine.metrics import observe_duplicate_verification
from subscription_engine.platform.security.context import AuthContext

logger = logging.getLogger("subscription_engine.verification")


@dataclass(slots=True)
class PaymentVerificationService:
    """Client-side payment confirmation.

    Safe to call any number of times for the same payment: once a captured
    transaction exists for the payment id, later calls answer from the ledger
    without calling the gateway. Activation is left to the gateway webhooks.
    """

    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    transaction_repository: TransactionRepository = TransactionRepository()

    def verify_payment(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: VerifyPaymentRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[PaymentVerificationData]:
        with observed_operation("verify_payment"):
            if not ctx.is_authenticated:
                raise AuthenticationRequired("Authentication required")
            payment_id = (payload.payment_id or "").strip()
            if not payment_id:
                raise InvalidRequest("Payment id is required", code="PAYMENT_ID_REQUIRED")
            now = now or utcnow()

            existing = self.transaction_repository.get_latest_by_payment(session, ctx, payment_id)
            if existing is not None and existing.status == TransactionStatus.CAPTURED:
                return self._duplicate(session, ctx, existing, now)

            payment = call_fail_closed(
                "fetch_payment",
                lambda: gateway.fetch_payment(payment_id),
                error_code="PAYMENT_FETCH_FAILED",
                message="Failed to fetch payment from the payment gateway",
            )
            if not payment.is_captured:
                logger.info(
                    "payment.not_captured",
                    extra={"gateway_payment_id": payment_id, "status": payment.status, "user_id": ctx.user_id},
                )
                raise PaymentNotCaptured(f"Payment is not captured (status: {payment.status})", code="PAYMENT_NOT_CAPTURED")

            try:
                with transaction_scope(session):
                    subscription = self._resolve_subscription(session, ctx, payload.subscription_id, now)
                    transaction = self._record_capture(session, subscription, payment)
            except IntegrityError:
                winner = self.transaction_repository.get_captured_by_payment(session, payment_id)
                if winner is None or winner.user_id != ctx.user_id:
                    raise
                return self._duplicate(session, ctx, winner, now)

            logger.info(
                "payment.verified",
                extra={
                    "gateway_payment_id": payment_id,
                    "subscription_id": str(subscription.id),
                    "user_id": ctx.user_id,
                },
            )
            return LifecycleResult(
                message="Payment verified successfully",
                data=PaymentVerificationData(
                    is_duplicate=False,
                    payment_id=payment_id,
                    payment_status=payment.status,
                    transaction=to_transaction_read(transaction, subscription.plan_code),
                    subscription=to_subscription_read(subscription, now),
                ),
            )

    def _resolve_subscription(
        self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID | None, now: datetime
    ) -> Subscription:
        if subscription_id is not None:
            subscription = self.subscription_repository.get_owned(session, ctx, subscription_id)
        else:
            subscription = self.subscription_repository.get_latest_pending(session, ctx)
            if subscription is None:
                subscription = self.subscription_repository.get_current(session, ctx, now)
        if subscription is None:
            raise NotFound("Subscription not found", code="SUBSCRIPTION_NOT_FOUND")
        return subscription

    def _record_capture(
        self, session: Session, subscription: Subscription, payment: PaymentFetched
    ) -> SubscriptionTransaction:
        row = next(
            (
                row
                for row in self.transaction_repository.list_by_payment(session, payment.payment_id)
                if row.status == TransactionStatus.CREATED and row.user_id == subscription.user_id
            ),
            None,
        ) or self.transaction_repository.get_unlinked_checkout(session, subscription.id)
        if row is not None:
            row.status = TransactionStatus.CAPTURED
            row.gateway_payment_id = payment.payment_id
            row.gateway_order_id = row.gateway_order_id or payment.order_id
            row.gateway_response = dict(payment.raw)
            session.flush()
            return row

        return record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.SUBSCRIPTION,
            status=TransactionStatus.CAPTURED,
            amount=payment.amount,
            method=payment.method or "razorpay",
            description="Payment verified by client",
            method_details={"activation_type": "payment_verification"},
            gateway_payment_id=payment.payment_id,
            gateway_order_id=payment.order_id,
            gateway_response=dict(payment.raw),
        )

    def _duplicate(
        self, session: Session, ctx: AuthContext, transaction: SubscriptionTransaction, now: datetime
    ) -> LifecycleResult[PaymentVerificationData]:
        observe_duplicate_verification()
        subscription = self.subscription_repository.get_owned(session, ctx, transaction.subscription_id)
        logger.info(
            "payment.already_verified",
            extra={"gateway_payment_id": transaction.gateway_payment_id, "user_id": ctx.user_id},
        )
        return LifecycleResult(
            message="Payment already verified",
            data=PaymentVerificationData(
                is_duplicate=True,
                payment_id=transaction.gateway_payment_id or "",
                payment_status=TransactionStatus.CAPTURED,
                transaction=to_transaction_read(transaction, subscription.plan_code if subscription else None),
                subscription=to_subscription_read(subscription, now) if subscription else None,
            ),
        )


payment_verification_service = PaymentVerificationService()
