from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from subscription_engine.business.payments.gateway import PaymentGateway
from subscription_engine.business.subscription.credits import CreditService
from subscription_engine.business.subscription.models import (
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from subscription_engine.business.subscription.reconciliation import AfterCommitCalls
from subscription_engine.business.subscription.repository import SubscriptionRepository
from subscription_engine.business.subscription.service import apply_resume, record_transaction
from subscription_engine.context import reset_lifecycle_operation, set_lifecycle_operation
from subscription_engine.core.config import get_settings
from subscription_engine.core.database import transaction_scope
from subscription_engine.metrics import observe_maintenance_rows

logger = logging.getLogger("subscription_engine.maintenance")


@dataclass(slots=True)
class MaintenanceService:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    credit_service: CreditService = field(default_factory=CreditService)

    def expire_unpaid_subscriptions(
        self, session: Session, gateway: PaymentGateway, now: datetime | None = None
    ) -> int:
        """Expire checkouts that were never paid within the pending TTL."""
        settings = get_settings()
        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.pending_subscription_ttl_minutes)
        token = set_lifecycle_operation("expire_unpaid")
        try:
            after_commit = AfterCommitCalls()
            with transaction_scope(session):
                rows = self.subscription_repository.list_unpaid_before(session, cutoff, settings.maintenance_batch_size)
                for subscription in rows:
                    subscription.status = SubscriptionStatus.EXPIRED
                    subscription.cancelled_at = now
                    subscription.cancellation_reason = "payment_timeout"
                    subscription.auto_renewal = False
                    subscription.next_billing_date = None
                    record_transaction(
                        session,
                        subscription,
                        transaction_type=TransactionType.ADJUSTMENT,
                        status=TransactionStatus.CANCELLED,
                        amount=0,
                        method="system_expiry",
                        description="Subscription expired: payment not completed in time",
                        method_details={"ttl_minutes": settings.pending_subscription_ttl_minutes},
                    )
                    gateway_subscription_id = subscription.gateway_subscription_id
                    if gateway_subscription_id:
                        after_commit.add(
                            "cancel_subscription",
                            lambda gid=gateway_subscription_id: gateway.cancel_subscription(gid, cancel_at_cycle_end=False),
                            gateway_subscription_id=gateway_subscription_id,
                        )
            after_commit.run()
        finally:
            reset_lifecycle_operation(token)

        if rows:
            logger.info("maintenance.expired_unpaid", extra={"count": len(rows)})
        observe_maintenance_rows("expire_unpaid", len(rows))
        return len(rows)

    def resume_due_subscriptions(self, session: Session, gateway: PaymentGateway, now: datetime | None = None) -> int:
        settings = get_settings()
        now = now or utcnow()
        token = set_lifecycle_operation("auto_resume")
        try:
            after_commit = AfterCommitCalls()
            with transaction_scope(session):
                rows = self.subscription_repository.list_due_resumes(session, now, settings.maintenance_batch_size)
                for subscription in rows:
                    paused_for = apply_resume(subscription, now)
                    record_transaction(
                        session,
                        subscription,
                        transaction_type=TransactionType.ADJUSTMENT,
                        status=TransactionStatus.CAPTURED,
                        amount=0,
                        method="resume",
                        description="Subscription resumed automatically",
                        method_details={"resumed_by": "system", "paused_seconds": paused_for.total_seconds()},
                    )
                    gateway_subscription_id = subscription.gateway_subscription_id
                    if gateway_subscription_id:
                        after_commit.add(
                            "resume_subscription",
                            lambda gid=gateway_subscription_id: gateway.resume_subscription(gid),
                            gateway_subscription_id=gateway_subscription_id,
                        )
            after_commit.run()
        finally:
            reset_lifecycle_operation(token)

        if rows:
            logger.info("maintenance.auto_resumed", extra={"count": len(rows)})
        observe_maintenance_rows("auto_resume", len(rows))
        return len(rows)

    def deactivate_expired_credits(self, session: Session, now: datetime | None = None) -> int:
        settings = get_settings()
        with transaction_scope(session):
            count = self.credit_service.deactivate_expired(session, now or utcnow(), settings.maintenance_batch_size)
        if count:
            logger.info("maintenance.credits_expired", extra={"count": count})
        observe_maintenance_rows("expire_credits", count)
        return count


maintenance_service = MaintenanceService()
