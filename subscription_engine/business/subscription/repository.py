from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from subscription_engine.business.subscription.access import current_subscription_clause
from subscription_engine.business.subscription.models import (
    Subscription,
    SubscriptionCredit,
    SubscriptionStatus,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
)
from subscription_engine.platform.security.context import AuthContext
from subscription_engine.platform.security.repository import OwnerScopedRepository


class SubscriptionRepository(OwnerScopedRepository):
    resource = "subscription.subscription"
    model = Subscription

    def get_current(self, session: Session, ctx: AuthContext, now: datetime, *, for_update: bool = False) -> Subscription | None:
        query = self.apply_scope_query(select(Subscription), ctx).where(current_subscription_clause(now))
        query = query.order_by(Subscription.created_at.desc()).limit(1)
        if for_update:
            query = query.with_for_update()
        return session.scalar(query)

    def get_owned(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> Subscription | None:
        return session.scalar(self.apply_scope_query(select(Subscription), ctx).where(Subscription.id == subscription_id))

    def get_latest_customer_id(self, session: Session, ctx: AuthContext) -> str | None:
        query = (
            self.apply_scope_query(select(Subscription.gateway_customer_id), ctx)
            .where(Subscription.gateway_customer_id.is_not(None))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    def get_latest_pending(self, session: Session, ctx: AuthContext) -> Subscription | None:
        query = (
            self.apply_scope_query(select(Subscription), ctx)
            .where(Subscription.status == SubscriptionStatus.CREATED)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    def list_for_user(self, session: Session, ctx: AuthContext) -> list[Subscription]:
        query = self.apply_scope_query(select(Subscription), ctx).order_by(Subscription.created_at.desc())
        return list(session.scalars(query))

    def count_current(self, session: Session, user_id: str, now: datetime) -> int:
        query = select(func.count()).select_from(Subscription).where(
            and_(Subscription.user_id == user_id, current_subscription_clause(now))
        )
        return int(session.scalar(query) or 0)

    @staticmethod
    def get_by_gateway_id(session: Session, gateway_subscription_id: str, *, for_update: bool = False) -> Subscription | None:
        query = (
            select(Subscription)
            .where(Subscription.gateway_subscription_id == gateway_subscription_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        return session.scalar(query)

    @staticmethod
    def list_unpaid_before(session: Session, cutoff: datetime, limit: int) -> list[Subscription]:
        query = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.CREATED,
                Subscription.total_amount > 0,
                Subscription.created_at < cutoff,
            )
            .order_by(Subscription.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(session.scalars(query))

    @staticmethod
    def list_due_resumes(session: Session, now: datetime, limit: int) -> list[Subscription]:
        query = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.PAUSED,
                Subscription.resume_at.is_not(None),
                Subscription.resume_at <= now,
            )
            .order_by(Subscription.resume_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(session.scalars(query))


class TransactionRepository(OwnerScopedRepository):
    resource = "subscription.transaction"
    model = SubscriptionTransaction

    def get_latest_by_payment(self, session: Session, ctx: AuthContext, payment_id: str) -> SubscriptionTransaction | None:
        query = (
            self.apply_scope_query(select(SubscriptionTransaction), ctx)
            .where(SubscriptionTransaction.gateway_payment_id == payment_id)
            .order_by(SubscriptionTransaction.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    @staticmethod
    def get_captured_by_payment(session: Session, payment_id: str) -> SubscriptionTransaction | None:
        return session.scalar(
            select(SubscriptionTransaction).where(
                SubscriptionTransaction.gateway_payment_id == payment_id,
                SubscriptionTransaction.status == TransactionStatus.CAPTURED,
            )
        )

    @staticmethod
    def list_by_payment(session: Session, payment_id: str) -> list[SubscriptionTransaction]:
        query = (
            select(SubscriptionTransaction)
            .where(SubscriptionTransaction.gateway_payment_id == payment_id)
            .order_by(SubscriptionTransaction.created_at.asc())
        )
        return list(session.scalars(query))

    @staticmethod
    def get_pending_for_subscription(session: Session, subscription_id: uuid.UUID) -> SubscriptionTransaction | None:
        query = (
            select(SubscriptionTransaction)
            .where(
                SubscriptionTransaction.subscription_id == subscription_id,
                SubscriptionTransaction.status == TransactionStatus.CREATED,
            )
            .order_by(SubscriptionTransaction.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    @staticmethod
    def get_unlinked_capture(session: Session, subscription_id: uuid.UUID) -> SubscriptionTransaction | None:
        query = (
            select(SubscriptionTransaction)
            .where(
                SubscriptionTransaction.subscription_id == subscription_id,
                SubscriptionTransaction.transaction_type == TransactionType.SUBSCRIPTION,
                SubscriptionTransaction.status == TransactionStatus.CAPTURED,
                SubscriptionTransaction.gateway_payment_id.is_(None),
                SubscriptionTransaction.amount > 0,
            )
            .order_by(SubscriptionTransaction.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    @staticmethod
    def get_unlinked_checkout(session: Session, subscription_id: uuid.UUID) -> SubscriptionTransaction | None:
        """Paid checkout row not yet tied to a gateway payment, pending or already captured by activation."""
        query = (
            select(SubscriptionTransaction)
            .where(
                SubscriptionTransaction.subscription_id == subscription_id,
                SubscriptionTransaction.transaction_type == TransactionType.SUBSCRIPTION,
                SubscriptionTransaction.status.in_((TransactionStatus.CREATED, TransactionStatus.CAPTURED)),
                SubscriptionTransaction.gateway_payment_id.is_(None),
                SubscriptionTransaction.amount > 0,
            )
            .order_by(SubscriptionTransaction.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    def list_history(
        self, session: Session, ctx: AuthContext, *, limit: int, offset: int
    ) -> list[tuple[SubscriptionTransaction, str | None]]:
        query = (
            self.apply_scope_query(select(SubscriptionTransaction, Subscription.plan_code), ctx)
            .outerjoin(Subscription, Subscription.id == SubscriptionTransaction.subscription_id)
            .order_by(SubscriptionTransaction.created_at.desc(), SubscriptionTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [(row[0], row[1]) for row in session.execute(query).all()]

    def count_for_user(self, session: Session, ctx: AuthContext) -> int:
        query = self.apply_scope_query(select(func.count()).select_from(SubscriptionTransaction), ctx)
        return int(session.scalar(query) or 0)


class CreditRepository(OwnerScopedRepository):
    resource = "subscription.credit"
    model = SubscriptionCredit

    def list_active(self, session: Session, ctx: AuthContext, now: datetime) -> list[SubscriptionCredit]:
        query = (
            self.apply_scope_query(select(SubscriptionCredit), ctx)
            .where(
                SubscriptionCredit.is_active.is_(True),
                SubscriptionCredit.remaining_amount > 0,
                (SubscriptionCredit.expires_at.is_(None)) | (SubscriptionCredit.expires_at > now),
            )
            .order_by(SubscriptionCredit.expires_at.asc())
        )
        return list(session.scalars(query))

    @staticmethod
    def list_expired(session: Session, now: datetime, limit: int) -> list[SubscriptionCredit]:
        query = (
            select(SubscriptionCredit)
            .where(
                SubscriptionCredit.is_active.is_(True),
                SubscriptionCredit.expires_at.is_not(None),
                SubscriptionCredit.expires_at <= now,
            )
            .limit(limit)
        )
        return list(session.scalars(query))
