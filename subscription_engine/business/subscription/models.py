from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subscription_engine.core.database import Base, UTCDateTime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus:
    CREATED = "created"
    ACTIVE = "active"
    AUTHENTICATED = "authenticated"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UPGRADED = "upgraded"
    REPLACED = "replaced"


class TransactionType:
    SUBSCRIPTION = "subscription"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


class TransactionStatus:
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.AUTHENTICATED})
LIVE_STATUSES = frozenset(
    {
        SubscriptionStatus.CREATED,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.AUTHENTICATED,
        SubscriptionStatus.PAUSED,
    }
)
TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.UPGRADED,
        SubscriptionStatus.REPLACED,
    }
)


class Subscription(Base):
    __tablename__ = "subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    plan_code: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly", server_default="monthly")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SubscriptionStatus.CREATED, server_default="created")
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR", server_default="INR")
    auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resume_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    pause_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_payment_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    gateway_subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    transactions: Mapped[list[SubscriptionTransaction]] = relationship(
        "subscription_engine.business.subscription.models.SubscriptionTransaction",
        back_populates="subscription",
        order_by="SubscriptionTransaction.created_at",
    )

    __table_args__ = (
        Index("ix_subscription_user_status", "user_id", "status"),
        Index("ix_subscription_user_created", "user_id", "created_at"),
        Index("ix_subscription_gateway_subscription", "gateway_subscription_id"),
        Index("ix_subscription_status_created", "status", "created_at"),
    )

    @property
    def is_free(self) -> bool:
        return self.plan_code == "free"


class SubscriptionTransaction(Base):
    __tablename__ = "subscription_transaction"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id"), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tax_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR", server_default="INR")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=TransactionStatus.CREATED, server_default="created")
    method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    method_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    subscription: Mapped[Subscription] = relationship(
        "subscription_engine.business.subscription.models.Subscription",
        back_populates="transactions",
    )

    __table_args__ = (
        Index("ix_subscription_transaction_user_created", "user_id", "created_at"),
        Index("ix_subscription_transaction_subscription", "subscription_id", "created_at"),
        Index("ix_subscription_transaction_payment", "gateway_payment_id"),
        Index(
            "uq_subscription_transaction_captured_payment",
            "gateway_payment_id",
            unique=True,
            postgresql_where=text("status = 'captured' AND gateway_payment_id IS NOT NULL"),
            sqlite_where=text("status = 'captured' AND gateway_payment_id IS NOT NULL"),
        ),
    )


class SubscriptionCredit(Base):
    __tablename__ = "subscription_credit"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR", server_default="INR")
    source_subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscription.id"), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscription_credit_user_active", "user_id", "is_active"),
        Index("ix_subscription_credit_expiry", "is_active", "expires_at"),
    )
