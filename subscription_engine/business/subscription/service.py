from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from subscription_engine import events
from subscription_engine.business.catalog.plans import PlanCatalog, PlanDefinition, plan_catalog
from subscription_engine.business.catalog.schemas import PlanListData, PlanRead
from subscription_engine.business.payments.gateway import CustomerProfile, PaymentGateway, SubscriptionCreated
from subscription_engine.business.subscription.access import (
    derive_access_state,
    grants_access,
    is_in_grace,
    will_renew,
)
from subscription_engine.business.subscription.credits import CreditService
from subscription_engine.business.subscription.errors import (
    AlreadyInState,
    AuthenticationRequired,
    ConfigurationError,
    InvalidRequest,
    LifecycleError,
    NotFound,
)
from subscription_engine.business.subscription.models import (
    ENTITLED_STATUSES,
    Subscription,
    SubscriptionCredit,
    SubscriptionStatus,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from subscription_engine.business.subscription.periods import FREE_PLAN_TERM, advance_cycle, gateway_total_count, shift
from subscription_engine.business.subscription.proration import DailyProrationStrategy, ProrationQuote, ProrationStrategy
from subscription_engine.business.subscription.reconciliation import AfterCommitCalls, call_fail_closed
from subscription_engine.business.subscription.repository import SubscriptionRepository, TransactionRepository
from subscription_engine.business.subscription.schemas import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    CreditBalanceData,
    CreditRead,
    CurrentSubscriptionData,
    LifecycleAction,
    PauseSubscriptionRequest,
    ProrationRead,
    SubscriptionHistoryData,
    SubscriptionMutationData,
    SubscriptionRead,
    SubscriptionStatusData,
    TransactionHistoryData,
    TransactionRead,
)
from subscription_engine.context import reset_lifecycle_operation, set_lifecycle_operation
from subscription_engine.core.config import get_settings
from subscription_engine.core.database import transaction_scope
from subscription_engine.core.schemas import LifecycleResult
from subscription_engine.metrics import observe_subscription_operation
from subscription_engine.platform.security.context import AuthContext

logger = logging.getLogger("subscription_engine.lifecycle")

MAX_PAUSES = 3
MAX_PAUSE_DAYS = 180
DEFAULT_PAUSE_DAYS = 30
CHANGEABLE_STATUSES = frozenset({SubscriptionStatus.CREATED, *ENTITLED_STATUSES})


def apply_resume(subscription: Subscription, now: datetime) -> timedelta:
    """Reactivate a paused row, pushing the period out by exactly the time spent paused."""
    paused_for = now - subscription.paused_at if subscription.paused_at is not None else timedelta(0)
    paused_for = max(paused_for, timedelta(0))
    subscription.current_period_end = shift(subscription.current_period_end, paused_for)
    subscription.next_billing_date = shift(subscription.next_billing_date, paused_for)
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.paused_at = None
    subscription.resume_at = None
    return paused_for


def record_transaction(
    session: Session,
    subscription: Subscription,
    *,
    transaction_type: str,
    status: str,
    amount: int,
    method: str,
    description: str,
    method_details: dict[str, object] | None = None,
    gateway_payment_id: str | None = None,
    gateway_order_id: str | None = None,
    gateway_response: dict[str, object] | None = None,
) -> SubscriptionTransaction:
    transaction = SubscriptionTransaction(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        transaction_type=transaction_type,
        amount=amount,
        tax_amount=0,
        discount_amount=0,
        fee_amount=0,
        net_amount=amount,
        currency=subscription.currency,
        status=status,
        method=method,
        method_details=method_details,
        gateway_payment_id=gateway_payment_id,
        gateway_order_id=gateway_order_id,
        gateway_response=gateway_response,
        description=description,
    )
    session.add(transaction)
    session.flush()
    return transaction


def to_subscription_read(subscription: Subscription, now: datetime) -> SubscriptionRead:
    return SubscriptionRead(
        id=subscription.id,
        plan_code=subscription.plan_code,
        billing_cycle=subscription.billing_cycle,
        status=subscription.status,
        access_state=derive_access_state(subscription, now).value,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        next_billing_date=subscription.next_billing_date,
        total_amount=subscription.total_amount,
        currency=subscription.currency,
        auto_renewal=subscription.auto_renewal,
        cancel_at_period_end=subscription.cancel_at_period_end,
        cancelled_at=subscription.cancelled_at,
        cancellation_reason=subscription.cancellation_reason,
        paused_at=subscription.paused_at,
        resume_at=subscription.resume_at,
        pause_count=subscription.pause_count,
        failed_payment_count=subscription.failed_payment_count,
        gateway_subscription_id=subscription.gateway_subscription_id,
        created_at=subscription.created_at,
        updated_at=subscription.updated_at,
    )


def to_transaction_read(transaction: SubscriptionTransaction, plan_code: str | None = None) -> TransactionRead:
    return TransactionRead(
        id=transaction.id,
        subscription_id=transaction.subscription_id,
        plan_code=plan_code,
        transaction_type=transaction.transaction_type,
        amount=transaction.amount,
        net_amount=transaction.net_amount,
        currency=transaction.currency,
        status=transaction.status,
        method=transaction.method,
        method_details=transaction.method_details,
        gateway_payment_id=transaction.gateway_payment_id,
        description=transaction.description,
        created_at=transaction.created_at,
    )


@contextmanager
def observed_operation(operation: str) -> Iterator[None]:
    token = set_lifecycle_operation(operation)
    try:
        yield
    except LifecycleError as exc:
        observe_subscription_operation(operation, exc.code.lower())
        raise
    except Exception:
        observe_subscription_operation(operation, "error")
        raise
    else:
        observe_subscription_operation(operation, "ok")
    finally:
        reset_lifecycle_operation(token)


@dataclass
class _Outcome:
    action: LifecycleAction
    subscription: Subscription
    transaction: SubscriptionTransaction | None = None
    replaced: Subscription | None = None
    checkout_url: str | None = None
    quote: ProrationQuote | None = None
    credit: SubscriptionCredit | None = None


@dataclass(slots=True)
class SubscriptionLifecycleService:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    transaction_repository: TransactionRepository = TransactionRepository()
    catalog: PlanCatalog = plan_catalog
    proration_strategy: ProrationStrategy = DailyProrationStrategy()
    credit_service: CreditService = field(default_factory=CreditService)

    def list_plans(self) -> LifecycleResult[PlanListData]:
        plans = [PlanRead.from_definition(plan) for plan in self.catalog.get_active_plans()]
        return LifecycleResult(message="Plans retrieved successfully", data=PlanListData(plans=plans))

    def create_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: CreateSubscriptionRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("create"):
            self._require_auth(ctx)
            now = now or utcnow()
            plan = self._validate_purchase(payload.plan_code, payload.billing_cycle)
            billing_cycle = payload.billing_cycle
            gateway_plan_id = self._resolve_gateway_plan_id(plan, billing_cycle)

            after_commit = AfterCommitCalls()
            with transaction_scope(session):
                current = self.subscription_repository.get_current(session, ctx, now, for_update=True)
                if current is None:
                    subscription, transaction, checkout_url = self._open_subscription(
                        session, ctx, gateway, plan, billing_cycle, gateway_plan_id, now, notes={}
                    )
                    outcome = _Outcome("created", subscription, transaction, checkout_url=checkout_url)
                elif current.plan_code == plan.code and current.status in ENTITLED_STATUSES:
                    outcome = self._extend(session, ctx, gateway, current, plan, billing_cycle, gateway_plan_id, now)
                else:
                    outcome = self._replace(
                        session, ctx, gateway, current, plan, billing_cycle, gateway_plan_id, now, after_commit
                    )
            after_commit.run()

            messages = {
                "created": f"{plan.name} subscription created successfully",
                "extended": f"{plan.name} subscription extended successfully",
                "replaced": f"Subscription replaced with {plan.name} plan successfully",
            }
            return self._finish(ctx, outcome, messages[outcome.action], now)

    def upgrade_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: ChangePlanRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("upgrade"):
            return self._change_plan(session, ctx, gateway, payload.new_plan_code, "upgrade", now or utcnow())

    def downgrade_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: ChangePlanRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("downgrade"):
            return self._change_plan(session, ctx, gateway, payload.new_plan_code, "downgrade", now or utcnow())

    def cancel_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: CancelSubscriptionRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("cancel"):
            self._require_auth(ctx)
            now = now or utcnow()
            immediate = payload.immediate
            after_commit = AfterCommitCalls()

            with transaction_scope(session):
                current = self.subscription_repository.get_current(session, ctx, now, for_update=True)
                if current is None:
                    raise NotFound("No active subscription found", code="NO_ACTIVE_SUBSCRIPTION")

                if is_in_grace(current, now):
                    if not immediate:
                        raise AlreadyInState(
                            "Subscription is already cancelled and will end at the period end",
                            code="SUBSCRIPTION_ALREADY_CANCELLED",
                        )
                elif current.status not in ENTITLED_STATUSES:
                    raise AlreadyInState(
                        f"Cannot cancel a subscription in status {current.status}",
                        code="INVALID_STATE_TRANSITION",
                    )

                current.status = SubscriptionStatus.CANCELLED
                current.auto_renewal = False
                current.cancelled_at = now
                current.cancellation_reason = payload.reason or "user_requested"
                if immediate:
                    current.cancel_at_period_end = False
                    current.next_billing_date = None
                else:
                    current.cancel_at_period_end = True

                transaction = record_transaction(
                    session,
                    current,
                    transaction_type=TransactionType.ADJUSTMENT,
                    status=TransactionStatus.CANCELLED,
                    amount=0,
                    method="cancellation",
                    description="Subscription cancelled immediately" if immediate else "Subscription cancelled at period end",
                    method_details={
                        "immediate": immediate,
                        "reason": current.cancellation_reason,
                        "access_ends_at": None if immediate else _isoformat(current.current_period_end),
                    },
                )

                gateway_subscription_id = current.gateway_subscription_id
                if gateway_subscription_id:
                    after_commit.add(
                        "cancel_subscription",
                        lambda: gateway.cancel_subscription(gateway_subscription_id, cancel_at_cycle_end=not immediate),
                        gateway_subscription_id=gateway_subscription_id,
                    )
            after_commit.run()

            message = (
                "Subscription cancelled immediately"
                if immediate
                else "Subscription will be cancelled at the end of the current billing period"
            )
            return self._finish(ctx, _Outcome("cancelled", current, transaction), message, now)

    def pause_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        payload: PauseSubscriptionRequest,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("pause"):
            self._require_auth(ctx)
            now = now or utcnow()
            days = DEFAULT_PAUSE_DAYS if payload.pause_duration_days is None else payload.pause_duration_days
            if days < 1 or days > MAX_PAUSE_DAYS:
                raise InvalidRequest(
                    f"Pause duration must be between 1 and {MAX_PAUSE_DAYS} days",
                    code="INVALID_PAUSE_DURATION",
                )
            after_commit = AfterCommitCalls()

            with transaction_scope(session):
                current = self.subscription_repository.get_current(session, ctx, now, for_update=True)
                if current is None:
                    raise NotFound("No active subscription found", code="NO_ACTIVE_SUBSCRIPTION")
                if current.status == SubscriptionStatus.PAUSED:
                    raise AlreadyInState("Subscription is already paused", code="SUBSCRIPTION_ALREADY_PAUSED")
                if current.status not in ENTITLED_STATUSES:
                    raise AlreadyInState(
                        f"Cannot pause a subscription in status {current.status}",
                        code="INVALID_STATE_TRANSITION",
                    )
                if self.catalog.is_free_plan(current.plan_code):
                    raise AlreadyInState("Free plan subscriptions cannot be paused", code="FREE_PLAN_NOT_PAUSABLE")
                if current.pause_count >= MAX_PAUSES:
                    raise AlreadyInState(
                        f"Subscription has already been paused {MAX_PAUSES} times",
                        code="PAUSE_LIMIT_EXCEEDED",
                    )

                current.status = SubscriptionStatus.PAUSED
                current.paused_at = now
                current.resume_at = now + timedelta(days=days)
                current.pause_count += 1

                transaction = record_transaction(
                    session,
                    current,
                    transaction_type=TransactionType.ADJUSTMENT,
                    status=TransactionStatus.CAPTURED,
                    amount=0,
                    method="pause",
                    description=f"Subscription paused for {days} days",
                    method_details={
                        "pause_duration_days": days,
                        "resume_at": _isoformat(current.resume_at),
                        "pause_number": current.pause_count,
                    },
                )

                gateway_subscription_id = current.gateway_subscription_id
                if gateway_subscription_id:
                    after_commit.add(
                        "pause_subscription",
                        lambda: gateway.pause_subscription(gateway_subscription_id),
                        gateway_subscription_id=gateway_subscription_id,
                    )
            after_commit.run()

            return self._finish(ctx, _Outcome("paused", current, transaction), "Subscription paused successfully", now)

    def resume_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        now: datetime | None = None,
    ) -> LifecycleResult[SubscriptionMutationData]:
        with observed_operation("resume"):
            self._require_auth(ctx)
            now = now or utcnow()
            after_commit = AfterCommitCalls()

            with transaction_scope(session):
                current = self.subscription_repository.get_current(session, ctx, now, for_update=True)
                if current is None:
                    raise NotFound("No active subscription found", code="NO_ACTIVE_SUBSCRIPTION")
                if current.status != SubscriptionStatus.PAUSED:
                    raise AlreadyInState("Subscription is not paused", code="SUBSCRIPTION_NOT_PAUSED")

                paused_for = apply_resume(current, now)
                transaction = record_transaction(
                    session,
                    current,
                    transaction_type=TransactionType.ADJUSTMENT,
                    status=TransactionStatus.CAPTURED,
                    amount=0,
                    method="resume",
                    description="Subscription resumed",
                    method_details={"paused_seconds": paused_for.total_seconds(), "resumed_by": "user"},
                )

                gateway_subscription_id = current.gateway_subscription_id
                if gateway_subscription_id:
                    after_commit.add(
                        "resume_subscription",
                        lambda: gateway.resume_subscription(gateway_subscription_id),
                        gateway_subscription_id=gateway_subscription_id,
                    )
            after_commit.run()

            return self._finish(ctx, _Outcome("resumed", current, transaction), "Subscription resumed successfully", now)

    def get_current_subscription(
        self, session: Session, ctx: AuthContext, now: datetime | None = None
    ) -> LifecycleResult[CurrentSubscriptionData]:
        self._require_auth(ctx)
        now = now or utcnow()
        current = self.subscription_repository.get_current(session, ctx, now)
        if current is None:
            free_plan = self.catalog.get_plan_by_code("free")
            return LifecycleResult(
                message="No active subscription, using the free plan",
                data=CurrentSubscriptionData(
                    has_subscription=False,
                    plan=PlanRead.from_definition(free_plan) if free_plan else None,
                ),
            )

        plan = self.catalog.get_plan_by_code(current.plan_code)
        return LifecycleResult(
            message="Current subscription retrieved successfully",
            data=CurrentSubscriptionData(
                has_subscription=True,
                subscription=to_subscription_read(current, now),
                plan=PlanRead.from_definition(plan) if plan else None,
            ),
        )

    def get_subscription_status(
        self, session: Session, ctx: AuthContext, now: datetime | None = None
    ) -> LifecycleResult[SubscriptionStatusData]:
        self._require_auth(ctx)
        now = now or utcnow()
        current = self.subscription_repository.get_current(session, ctx, now)

        if current is None:
            free_plan = self.catalog.get_plan_by_code("free")
            data = SubscriptionStatusData(
                has_subscription=False,
                plan_code="free",
                access_state="active",
                is_active=True,
                is_cancelled_but_active=False,
                will_renew=False,
                features=list(free_plan.features) if free_plan else [],
                limits=dict(free_plan.limits) if free_plan else {},
            )
            return LifecycleResult(message="Subscription status retrieved successfully", data=data)

        plan = self.catalog.get_plan_by_code(current.plan_code)
        state = derive_access_state(current, now)
        renews = will_renew(current)
        data = SubscriptionStatusData(
            has_subscription=True,
            plan_code=current.plan_code,
            status=current.status,
            access_state=state.value,
            is_active=grants_access(state),
            is_cancelled_but_active=is_in_grace(current, now),
            will_renew=renews,
            access_ends_at=None if renews else current.current_period_end,
            current_period_end=current.current_period_end,
            features=list(plan.features) if plan else [],
            limits=dict(plan.limits) if plan else {},
        )
        return LifecycleResult(message="Subscription status retrieved successfully", data=data)

    def list_subscriptions(
        self, session: Session, ctx: AuthContext, now: datetime | None = None
    ) -> LifecycleResult[SubscriptionHistoryData]:
        self._require_auth(ctx)
        now = now or utcnow()
        rows = self.subscription_repository.list_for_user(session, ctx)
        return LifecycleResult(
            message="Subscription history retrieved successfully",
            data=SubscriptionHistoryData(subscriptions=[to_subscription_read(row, now) for row in rows]),
        )

    def get_transaction_history(
        self, session: Session, ctx: AuthContext, *, limit: int = 20, offset: int = 0
    ) -> LifecycleResult[TransactionHistoryData]:
        self._require_auth(ctx)
        limit = min(max(limit, 1), 100)
        offset = max(offset, 0)
        rows = self.transaction_repository.list_history(session, ctx, limit=limit, offset=offset)
        return LifecycleResult(
            message="Transaction history retrieved successfully",
            data=TransactionHistoryData(
                transactions=[to_transaction_read(transaction, plan_code) for transaction, plan_code in rows],
                total=self.transaction_repository.count_for_user(session, ctx),
                limit=limit,
                offset=offset,
            ),
        )

    def get_credit_balance(
        self, session: Session, ctx: AuthContext, now: datetime | None = None
    ) -> LifecycleResult[CreditBalanceData]:
        self._require_auth(ctx)
        return LifecycleResult(
            message="Credit balance retrieved successfully",
            data=self.credit_service.get_balance(session, ctx, now or utcnow()),
        )

    def _change_plan(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        new_plan_code: str | None,
        direction: str,
        now: datetime,
    ) -> LifecycleResult[SubscriptionMutationData]:
        self._require_auth(ctx)
        if not new_plan_code:
            raise InvalidRequest("New plan code is required", code="PLAN_CODE_REQUIRED")

        upgrading = direction == "upgrade"
        after_commit = AfterCommitCalls()
        with transaction_scope(session):
            current = self.subscription_repository.get_current(session, ctx, now, for_update=True)
            if current is None or current.status not in CHANGEABLE_STATUSES:
                raise NotFound("No active subscription found", code="NO_ACTIVE_SUBSCRIPTION")

            new_plan = self.catalog.get_plan_by_code(new_plan_code)
            if new_plan is None or not new_plan.is_active:
                raise NotFound("New plan not found", code="NEW_PLAN_NOT_FOUND")
            if new_plan.code == current.plan_code:
                raise AlreadyInState("You are already on this plan", code="SAME_PLAN_SELECTED")

            current_plan = self.catalog.get_plan_by_code(current.plan_code)
            if current_plan is None:
                logger.error("plan.unknown_current_plan", extra={"plan_code": current.plan_code, "subscription_id": str(current.id)})
                raise ConfigurationError("Current plan configuration not found", code="PLAN_CONFIGURATION_ERROR")

            billing_cycle = current.billing_cycle
            current_price = current_plan.price_for(billing_cycle)
            new_price = new_plan.price_for(billing_cycle)
            if upgrading and new_price <= current_price:
                raise InvalidRequest("Selected plan is not an upgrade", code="NOT_AN_UPGRADE")
            if not upgrading and new_price >= current_price:
                raise InvalidRequest("Selected plan is not a downgrade", code="NOT_A_DOWNGRADE")

            gateway_plan_id = self._resolve_gateway_plan_id(new_plan, billing_cycle)
            subscription, new_transaction, checkout_url = self._open_subscription(
                session,
                ctx,
                gateway,
                new_plan,
                billing_cycle,
                gateway_plan_id,
                now,
                notes={"previous_subscription_id": str(current.id), "change_type": direction},
            )

            previous_status = current.status
            old_gateway_id = current.gateway_subscription_id
            current.status = SubscriptionStatus.UPGRADED if upgrading else SubscriptionStatus.REPLACED
            current.cancelled_at = now
            current.auto_renewal = False
            current.next_billing_date = None
            current.cancellation_reason = f"{direction}d_to_{new_plan.code}"

            details: dict[str, object] = {
                "change_type": direction,
                "previous_plan_code": current_plan.code,
                "new_plan_code": new_plan.code,
                "new_subscription_id": str(subscription.id),
            }
            quote: ProrationQuote | None = None
            credit: SubscriptionCredit | None = None
            if old_gateway_id is None:
                record_transaction(
                    session,
                    current,
                    transaction_type=TransactionType.ADJUSTMENT,
                    status=TransactionStatus.CANCELLED,
                    amount=0,
                    method="legacy_upgrade",
                    description=f"Legacy subscription moved to {new_plan.name} plan",
                    method_details=details,
                )
            else:
                if previous_status in ENTITLED_STATUSES:
                    quote = self.proration_strategy.quote(
                        current_price, new_price, current.current_period_start, current.current_period_end, now
                    )
                    details["proration"] = quote.as_details()
                if quote is not None and quote.credit_amount > 0:
                    credit = self.credit_service.issue(
                        session,
                        user_id=current.user_id,
                        amount=quote.credit_amount,
                        source_subscription_id=current.id,
                        description=f"Credit for unused {current_plan.name} plan time",
                        now=now,
                    )
                    details["credit_id"] = str(credit.id)
                    record_transaction(
                        session,
                        current,
                        transaction_type=TransactionType.REFUND,
                        status=TransactionStatus.REFUNDED,
                        amount=quote.credit_amount,
                        method="plan_change",
                        description=f"Unused {current_plan.name} plan time refunded as credit",
                        method_details=details,
                    )
                else:
                    record_transaction(
                        session,
                        current,
                        transaction_type=TransactionType.ADJUSTMENT,
                        status=TransactionStatus.CANCELLED,
                        amount=0,
                        method="plan_change",
                        description=f"Plan changed from {current_plan.name} to {new_plan.name}",
                        method_details=details,
                    )
                after_commit.add(
                    "cancel_subscription",
                    lambda: gateway.cancel_subscription(old_gateway_id, cancel_at_cycle_end=False),
                    gateway_subscription_id=old_gateway_id,
                )
        after_commit.run()

        outcome = _Outcome(
            "upgraded" if upgrading else "downgraded",
            subscription,
            new_transaction,
            replaced=current,
            checkout_url=checkout_url,
            quote=quote,
            credit=credit,
        )
        verb = "upgraded" if upgrading else "downgraded"
        return self._finish(ctx, outcome, f"Subscription {verb} to {new_plan.name} plan successfully", now)

    def _extend(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        current: Subscription,
        plan: PlanDefinition,
        billing_cycle: str,
        gateway_plan_id: str | None,
        now: datetime,
    ) -> _Outcome:
        amount = plan.price_for(billing_cycle)
        previous_end = current.current_period_end or now
        new_end = advance_cycle(previous_end, billing_cycle)
        details: dict[str, object] = {
            "is_extension": True,
            "billing_cycle": billing_cycle,
            "previous_period_end": _isoformat(previous_end),
            "new_period_end": _isoformat(new_end),
        }

        checkout_url = None
        if plan.is_free:
            details["activation_type"] = "free_plan"
            status = TransactionStatus.CAPTURED
            method = "free_plan"
            gateway_response = None
        else:
            customer_id, created = self._create_gateway_subscription(
                session,
                ctx,
                gateway,
                gateway_plan_id or "",
                billing_cycle,
                notes={"plan_code": plan.code, "is_extension": "true", "extended_subscription_id": str(current.id)},
            )
            current.gateway_subscription_id = created.subscription_id
            current.gateway_customer_id = customer_id
            current.total_amount += amount
            details["gateway_plan_id"] = gateway_plan_id
            status = TransactionStatus.CREATED
            method = "razorpay_subscription"
            gateway_response = dict(created.raw)
            checkout_url = created.short_url

        current.current_period_end = new_end
        current.next_billing_date = new_end
        current.billing_cycle = billing_cycle

        transaction = record_transaction(
            session,
            current,
            transaction_type=TransactionType.SUBSCRIPTION,
            status=status,
            amount=amount,
            method=method,
            description=f"{plan.name} plan extended by one {billing_cycle} cycle",
            method_details=details,
            gateway_response=gateway_response,
        )
        return _Outcome("extended", current, transaction, checkout_url=checkout_url)

    def _replace(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        current: Subscription,
        plan: PlanDefinition,
        billing_cycle: str,
        gateway_plan_id: str | None,
        now: datetime,
        after_commit: AfterCommitCalls,
    ) -> _Outcome:
        subscription, transaction, checkout_url = self._open_subscription(
            session,
            ctx,
            gateway,
            plan,
            billing_cycle,
            gateway_plan_id,
            now,
            notes={"replaced_subscription_id": str(current.id)},
        )

        previous_status = current.status
        current.status = SubscriptionStatus.REPLACED
        current.cancelled_at = now
        current.auto_renewal = False
        current.next_billing_date = None
        current.cancellation_reason = "replaced"
        if previous_status in ENTITLED_STATUSES:
            record_transaction(
                session,
                current,
                transaction_type=TransactionType.ADJUSTMENT,
                status=TransactionStatus.CANCELLED,
                amount=0,
                method="replacement",
                description=f"Replaced by {plan.name} plan",
                method_details={
                    "replaced_by_subscription_id": str(subscription.id),
                    "previous_plan_code": current.plan_code,
                    "new_plan_code": plan.code,
                },
            )

        old_gateway_id = current.gateway_subscription_id
        if old_gateway_id:
            after_commit.add(
                "cancel_subscription",
                lambda: gateway.cancel_subscription(old_gateway_id, cancel_at_cycle_end=False),
                gateway_subscription_id=old_gateway_id,
            )
        return _Outcome("replaced", subscription, transaction, replaced=current, checkout_url=checkout_url)

    def _open_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        plan: PlanDefinition,
        billing_cycle: str,
        gateway_plan_id: str | None,
        now: datetime,
        *,
        notes: dict[str, str],
    ) -> tuple[Subscription, SubscriptionTransaction, str | None]:
        currency = get_settings().ledger_currency
        if plan.is_free:
            subscription = Subscription(
                user_id=ctx.user_id,
                plan_code=plan.code,
                billing_cycle=billing_cycle,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=now + FREE_PLAN_TERM,
                next_billing_date=None,
                total_amount=0,
                currency=currency,
                auto_renewal=False,
            )
            session.add(subscription)
            session.flush()
            transaction = record_transaction(
                session,
                subscription,
                transaction_type=TransactionType.SUBSCRIPTION,
                status=TransactionStatus.CAPTURED,
                amount=0,
                method="free_plan",
                description=f"{plan.name} plan activated",
                method_details={"activation_type": "free_plan", "billing_cycle": billing_cycle, **notes},
            )
            return subscription, transaction, None

        amount = plan.price_for(billing_cycle)
        customer_id, created = self._create_gateway_subscription(
            session,
            ctx,
            gateway,
            gateway_plan_id or "",
            billing_cycle,
            notes={"plan_code": plan.code, "billing_cycle": billing_cycle, **notes},
        )
        period_end = advance_cycle(now, billing_cycle)
        subscription = Subscription(
            user_id=ctx.user_id,
            plan_code=plan.code,
            billing_cycle=billing_cycle,
            status=SubscriptionStatus.CREATED,
            current_period_start=now,
            current_period_end=period_end,
            next_billing_date=period_end,
            total_amount=amount,
            currency=currency,
            auto_renewal=True,
            gateway_subscription_id=created.subscription_id,
            gateway_customer_id=customer_id,
        )
        session.add(subscription)
        session.flush()
        transaction = record_transaction(
            session,
            subscription,
            transaction_type=TransactionType.SUBSCRIPTION,
            status=TransactionStatus.CREATED,
            amount=amount,
            method="razorpay_subscription",
            description=f"{plan.name} plan subscription ({billing_cycle})",
            method_details={"gateway_plan_id": gateway_plan_id, "billing_cycle": billing_cycle, **notes},
            gateway_response=dict(created.raw),
        )
        return subscription, transaction, created.short_url

    def _create_gateway_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        gateway: PaymentGateway,
        gateway_plan_id: str,
        billing_cycle: str,
        *,
        notes: dict[str, str],
    ) -> tuple[str, SubscriptionCreated]:
        customer_id = self.subscription_repository.get_latest_customer_id(session, ctx)
        if customer_id is None:
            profile = CustomerProfile(
                name=ctx.customer_profile_name(),
                email=ctx.email,
                contact=ctx.contact,
                notes={"user_id": str(ctx.user_id)},
            )
            customer_id = call_fail_closed("create_customer", lambda: gateway.create_customer(profile)).customer_id

        gateway_notes = {"user_id": str(ctx.user_id), **notes}
        created = call_fail_closed(
            "create_subscription",
            lambda: gateway.create_subscription(
                gateway_plan_id, customer_id, gateway_total_count(billing_cycle), gateway_notes
            ),
        )
        return customer_id, created

    def _validate_purchase(self, plan_code: str | None, billing_cycle: str | None) -> PlanDefinition:
        if not plan_code or not plan_code.strip():
            raise InvalidRequest("Plan code is required", code="PLAN_CODE_REQUIRED")
        if not self.catalog.is_valid_plan_code(plan_code):
            raise InvalidRequest(f"Invalid plan code: {plan_code}", code="INVALID_PLAN_CODE")
        if not self.catalog.is_valid_billing_cycle(billing_cycle):
            raise InvalidRequest("Billing cycle must be monthly or yearly", code="INVALID_BILLING_CYCLE")

        plan = self.catalog.get_plan_by_code(plan_code)
        if plan is None or not plan.is_active:
            raise NotFound("Plan not found or inactive", code="PLAN_NOT_FOUND")
        return plan

    def _resolve_gateway_plan_id(self, plan: PlanDefinition, billing_cycle: str) -> str | None:
        if plan.is_free:
            return None
        gateway_plan_id = self.catalog.get_gateway_plan_id(plan.code, billing_cycle)
        if not gateway_plan_id:
            logger.error(
                "plan.gateway_plan_missing",
                extra={"plan_code": plan.code, "billing_cycle": billing_cycle},
            )
            raise ConfigurationError(
                f"Payment plan not configured for {plan.code} ({billing_cycle})",
                code="RAZORPAY_PLAN_NOT_CONFIGURED",
            )
        return gateway_plan_id

    @staticmethod
    def _require_auth(ctx: AuthContext) -> None:
        if not ctx.is_authenticated:
            raise AuthenticationRequired("Authentication required")

    @staticmethod
    def _finish(
        ctx: AuthContext, outcome: _Outcome, message: str, now: datetime
    ) -> LifecycleResult[SubscriptionMutationData]:
        subscription = outcome.subscription
        events.publish(
            {
                "event_type": f"subscription.{outcome.action}",
                "subscription_id": str(subscription.id),
                "user_id": subscription.user_id,
                "plan_code": subscription.plan_code,
                "status": subscription.status,
                "replaced_subscription_id": str(outcome.replaced.id) if outcome.replaced else None,
                "period_end": _isoformat(subscription.current_period_end),
                "correlation_id": ctx.correlation_id,
            }
        )
        logger.info(
            "subscription.%s",
            outcome.action,
            extra={
                "user_id": subscription.user_id,
                "subscription_id": str(subscription.id),
                "plan_code": subscription.plan_code,
                "status": subscription.status,
            },
        )

        quote = outcome.quote
        return LifecycleResult(
            message=message,
            data=SubscriptionMutationData(
                action=outcome.action,
                subscription=to_subscription_read(subscription, now),
                transaction=to_transaction_read(outcome.transaction, subscription.plan_code) if outcome.transaction else None,
                replaced_subscription_id=outcome.replaced.id if outcome.replaced else None,
                checkout_url=outcome.checkout_url,
                proration=ProrationRead(**quote.as_details()) if quote else None,
                credit=CreditRead.model_validate(outcome.credit) if outcome.credit else None,
            ),
        )


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


subscription_lifecycle_service = SubscriptionLifecycleService()
