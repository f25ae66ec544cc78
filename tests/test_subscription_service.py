from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from subscription_engine import events
from subscription_engine.business.catalog.plans import PlanCatalog
from subscription_engine.business.subscription.errors import (
    AlreadyInState,
    AuthenticationRequired,
    ConfigurationError,
    GatewayTransientError,
    InvalidRequest,
    NotFound,
)
from subscription_engine.business.subscription.models import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
)
from subscription_engine.business.subscription.periods import FREE_PLAN_TERM, add_months
from subscription_engine.business.subscription.repository import SubscriptionRepository
from subscription_engine.business.subscription.schemas import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    PauseSubscriptionRequest,
)
from subscription_engine.business.subscription.service import SubscriptionLifecycleService
from subscription_engine.core.config import Settings
from subscription_engine.platform.security.context import AuthContext
from support import T0, FakeGateway, activate

service = SubscriptionLifecycleService()


def _create(session: Session, ctx: AuthContext, gateway: FakeGateway, plan_code: str, cycle: str = "monthly", now=T0):
    return service.create_subscription(
        session, ctx, gateway, CreateSubscriptionRequest(plan_code=plan_code, billing_cycle=cycle), now=now
    )


def _active_pro(session: Session, ctx: AuthContext, gateway: FakeGateway):
    result = _create(session, ctx, gateway, "pro")
    activate(session, result.data.subscription.id)
    return session.get(Subscription, result.data.subscription.id)


def _current_count(session: Session, user_id: str = "user-1", now=T0) -> int:
    return SubscriptionRepository().count_current(session, user_id, now)


def test_create_paid_subscription_opens_checkout(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    result = _create(db_session, ctx, gateway, "pro")

    assert result.success is True
    data = result.data
    assert data.action == "created"
    assert data.subscription.status == SubscriptionStatus.CREATED
    assert data.subscription.access_state == "pending"
    assert data.subscription.total_amount == 99900
    assert data.subscription.current_period_end == add_months(T0, 1)
    assert data.checkout_url == f"https://rzp.io/i/{data.subscription.gateway_subscription_id}"
    assert data.transaction.status == TransactionStatus.CREATED
    assert data.transaction.amount == 99900

    assert gateway.operations() == ["create_customer", "create_subscription"]
    call = gateway.calls_to("create_subscription")[0]
    assert call["plan_id"] == "plan_R0c1k7ViK9H1Hj"
    assert call["total_count"] == 12
    assert call["notes"]["user_id"] == "user-1"

    created_events = [item for item in events.published_events if item["event_type"] == "subscription.created"]
    assert created_events[-1]["correlation_id"] == "corr-test"


def test_create_free_subscription_is_active_without_gateway(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    result = _create(db_session, ctx, gateway, "free")

    subscription = result.data.subscription
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.access_state == "active"
    assert subscription.next_billing_date is None
    assert subscription.current_period_end == T0 + FREE_PLAN_TERM
    assert result.data.transaction.status == TransactionStatus.CAPTURED
    assert result.data.transaction.amount == 0
    assert gateway.calls == []


def test_yearly_checkout_requests_single_charge(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    result = _create(db_session, ctx, gateway, "plus", cycle="yearly")

    assert result.data.subscription.total_amount == 1999900
    assert result.data.subscription.current_period_end == add_months(T0, 12)
    assert gateway.calls_to("create_subscription")[0]["total_count"] == 1


def test_same_plan_purchase_extends_entitled_subscription(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    original = _active_pro(db_session, ctx, gateway)
    original_end = original.current_period_end
    original_gateway_id = original.gateway_subscription_id

    result = _create(db_session, ctx, gateway, "pro", now=T0 + timedelta(days=5))

    assert result.data.action == "extended"
    assert result.data.subscription.id == original.id
    assert result.data.subscription.status == SubscriptionStatus.ACTIVE
    assert result.data.subscription.current_period_end == add_months(original_end, 1)
    assert result.data.subscription.next_billing_date == add_months(original_end, 1)
    assert result.data.subscription.total_amount == 2 * 99900
    assert result.data.subscription.gateway_subscription_id != original_gateway_id
    assert result.data.transaction.method_details["is_extension"] is True
    assert gateway.operations() == ["create_customer", "create_subscription", "create_subscription"]
    assert _current_count(db_session) == 1


def test_different_plan_replaces_current_subscription(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    pending = _create(db_session, ctx, gateway, "pro").data.subscription

    result = _create(db_session, ctx, gateway, "plus")

    assert result.data.action == "replaced"
    assert result.data.replaced_subscription_id == pending.id
    assert result.data.subscription.plan_code == "plus"
    old = db_session.get(Subscription, pending.id)
    assert old.status == SubscriptionStatus.REPLACED
    assert old.auto_renewal is False
    assert old.next_billing_date is None
    assert gateway.calls_to("cancel_subscription") == [
        {"subscription_id": pending.gateway_subscription_id, "cancel_at_cycle_end": False}
    ]
    assert gateway.operations().count("create_customer") == 1
    assert _current_count(db_session) == 1


def test_same_plan_checkout_is_replaced_not_extended(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    pending = _create(db_session, ctx, gateway, "pro").data.subscription

    result = _create(db_session, ctx, gateway, "pro")

    assert result.data.action == "replaced"
    assert result.data.subscription.id != pending.id
    assert result.data.replaced_subscription_id == pending.id
    assert result.data.subscription.plan_code == "pro"
    assert db_session.get(Subscription, pending.id).status == SubscriptionStatus.REPLACED
    assert _current_count(db_session) == 1


def test_replacing_entitled_free_plan_records_adjustment(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    free = _create(db_session, ctx, gateway, "free").data.subscription

    result = _create(db_session, ctx, gateway, "pro")

    assert result.data.action == "replaced"
    adjustments = db_session.scalars(
        select(SubscriptionTransaction).where(
            SubscriptionTransaction.subscription_id == free.id,
            SubscriptionTransaction.transaction_type == TransactionType.ADJUSTMENT,
        )
    ).all()
    assert len(adjustments) == 1
    assert adjustments[0].method_details["replaced_by_subscription_id"] == str(result.data.subscription.id)
    assert gateway.calls_to("cancel_subscription") == []


def test_at_most_one_current_subscription(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _create(db_session, ctx, gateway, "free")
    assert _current_count(db_session) == 1
    _create(db_session, ctx, gateway, "pro")
    assert _current_count(db_session) == 1
    _create(db_session, ctx, gateway, "plus", cycle="yearly")
    assert _current_count(db_session) == 1
    _create(db_session, ctx, gateway, "free")
    assert _current_count(db_session) == 1
    assert db_session.scalar(select(func.count()).select_from(Subscription)) == 4


def test_gateway_failure_on_create_commits_nothing(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    gateway.fail("create_subscription")

    with pytest.raises(GatewayTransientError) as exc_info:
        _create(db_session, ctx, gateway, "pro")

    assert exc_info.value.code == "SUBSCRIPTION_CREATION_FAILED"
    assert exc_info.value.status_code == 502
    assert db_session.scalar(select(func.count()).select_from(Subscription)) == 0
    assert db_session.scalar(select(func.count()).select_from(SubscriptionTransaction)) == 0
    assert events.published_events == []


def test_gateway_failure_on_replace_keeps_current_subscription(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    free = _create(db_session, ctx, gateway, "free").data.subscription
    gateway.fail("create_customer")

    with pytest.raises(GatewayTransientError):
        _create(db_session, ctx, gateway, "pro")

    db_session.expire_all()
    assert db_session.get(Subscription, free.id).status == SubscriptionStatus.ACTIVE
    assert db_session.scalar(select(func.count()).select_from(Subscription)) == 1


def test_missing_gateway_credentials_is_configuration_error(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    gateway.fail("create_customer", "razorpay credentials are not configured", reported_as="client")

    with pytest.raises(ConfigurationError) as exc_info:
        _create(db_session, ctx, gateway, "pro")

    assert exc_info.value.code == "GATEWAY_NOT_CONFIGURED"
    assert exc_info.value.status_code == 500


def test_unmapped_gateway_plan_fails_before_gateway_call(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    unmapped = SubscriptionLifecycleService(catalog=PlanCatalog(settings=Settings(razorpay_plan_pro_monthly=None)))

    with pytest.raises(ConfigurationError) as exc_info:
        unmapped.create_subscription(db_session, ctx, gateway, CreateSubscriptionRequest(plan_code="pro"), now=T0)

    assert exc_info.value.code == "RAZORPAY_PLAN_NOT_CONFIGURED"
    assert gateway.calls == []


@pytest.mark.parametrize(
    ("plan_code", "cycle", "code"),
    [
        (None, "monthly", "PLAN_CODE_REQUIRED"),
        ("  ", "monthly", "PLAN_CODE_REQUIRED"),
        ("gold", "monthly", "INVALID_PLAN_CODE"),
        ("pro", "weekly", "INVALID_BILLING_CYCLE"),
    ],
)
def test_create_rejects_invalid_requests(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway, plan_code, cycle, code
) -> None:
    with pytest.raises(InvalidRequest) as exc_info:
        service.create_subscription(
            db_session, ctx, gateway, CreateSubscriptionRequest(plan_code=plan_code, billing_cycle=cycle), now=T0
        )
    assert exc_info.value.code == code
    assert gateway.calls == []


def test_anonymous_caller_is_rejected(db_session: Session, gateway: FakeGateway) -> None:
    anonymous = AuthContext(user_id=None)
    with pytest.raises(AuthenticationRequired):
        _create(db_session, anonymous, gateway, "pro")
    with pytest.raises(AuthenticationRequired):
        service.get_subscription_status(db_session, AuthContext(user_id="anonymous"))


def test_cancel_at_period_end_keeps_access_until_period_end(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    subscription = _active_pro(db_session, ctx, gateway)
    period_end = subscription.current_period_end
    now = T0 + timedelta(days=3)

    result = service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=now)

    cancelled = result.data.subscription
    assert result.data.action == "cancelled"
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancel_at_period_end is True
    assert cancelled.auto_renewal is False
    assert cancelled.access_state == "grace_period"
    assert cancelled.cancellation_reason == "user_requested"
    assert gateway.calls_to("cancel_subscription") == [
        {"subscription_id": subscription.gateway_subscription_id, "cancel_at_cycle_end": True}
    ]

    status = service.get_subscription_status(db_session, ctx, now=now).data
    assert status.is_active is True
    assert status.is_cancelled_but_active is True
    assert status.will_renew is False
    assert status.access_ends_at == period_end

    with pytest.raises(AlreadyInState) as exc_info:
        service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=now)
    assert exc_info.value.code == "SUBSCRIPTION_ALREADY_CANCELLED"

    after_end = service.get_current_subscription(db_session, ctx, now=period_end + timedelta(seconds=1)).data
    assert after_end.has_subscription is False
    assert after_end.plan.code == "free"


def test_cancel_immediately_ends_access(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _active_pro(db_session, ctx, gateway)

    result = service.cancel_subscription(
        db_session, ctx, gateway, CancelSubscriptionRequest(immediate=True, reason="too expensive"), now=T0
    )

    assert result.data.subscription.cancel_at_period_end is False
    assert result.data.subscription.next_billing_date is None
    assert result.data.subscription.cancellation_reason == "too expensive"
    assert result.data.subscription.access_state == "expired"
    assert gateway.calls_to("cancel_subscription")[0]["cancel_at_cycle_end"] is False
    assert service.get_subscription_status(db_session, ctx, now=T0).data.has_subscription is False


def test_grace_period_can_still_be_cut_short(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _active_pro(db_session, ctx, gateway)
    service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=T0)

    result = service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(immediate=True), now=T0)

    assert result.data.subscription.cancel_at_period_end is False
    assert _current_count(db_session) == 0


def test_cancel_requires_entitled_subscription(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    with pytest.raises(NotFound) as missing:
        service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=T0)
    assert missing.value.code == "NO_ACTIVE_SUBSCRIPTION"

    _create(db_session, ctx, gateway, "pro")
    with pytest.raises(AlreadyInState) as pending:
        service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=T0)
    assert pending.value.code == "INVALID_STATE_TRANSITION"


def test_cancel_survives_gateway_failure(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    subscription = _active_pro(db_session, ctx, gateway)
    gateway.fail("cancel_subscription")

    result = service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(), now=T0)

    assert result.success is True
    db_session.expire_all()
    assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.CANCELLED


def test_cancel_tolerates_gateway_with_no_running_cycle(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    _active_pro(db_session, ctx, gateway)
    gateway.fail(
        "cancel_subscription",
        "Subscription cannot be cancelled since no billing cycle is going on",
        status_code=400,
        retryable=False,
    )

    result = service.cancel_subscription(db_session, ctx, gateway, CancelSubscriptionRequest(immediate=True), now=T0)

    assert result.data.subscription.status == SubscriptionStatus.CANCELLED


def test_pause_and_resume_shift_period_by_paused_time(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    subscription = _active_pro(db_session, ctx, gateway)
    period_end = subscription.current_period_end
    next_billing = subscription.next_billing_date
    paused_at = T0 + timedelta(days=2)

    paused = service.pause_subscription(
        db_session, ctx, gateway, PauseSubscriptionRequest(pause_duration_days=10), now=paused_at
    ).data.subscription
    assert paused.status == SubscriptionStatus.PAUSED
    assert paused.access_state == "paused"
    assert paused.pause_count == 1
    assert paused.resume_at == paused_at + timedelta(days=10)
    assert gateway.calls_to("pause_subscription") == [{"subscription_id": subscription.gateway_subscription_id}]

    resumed_at = paused_at + timedelta(days=5, hours=6)
    resumed = service.resume_subscription(db_session, ctx, gateway, now=resumed_at).data
    assert resumed.action == "resumed"
    assert resumed.subscription.status == SubscriptionStatus.ACTIVE
    assert resumed.subscription.current_period_end == period_end + timedelta(days=5, hours=6)
    assert resumed.subscription.next_billing_date == next_billing + timedelta(days=5, hours=6)
    assert resumed.subscription.paused_at is None
    assert resumed.subscription.resume_at is None
    assert resumed.transaction.method_details["paused_seconds"] == timedelta(days=5, hours=6).total_seconds()
    assert len(gateway.calls_to("resume_subscription")) == 1


def test_pause_defaults_to_thirty_days(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _active_pro(db_session, ctx, gateway)

    paused = service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0).data
    assert paused.subscription.resume_at == T0 + timedelta(days=30)


def test_fourth_pause_is_rejected(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _active_pro(db_session, ctx, gateway)
    now = T0
    for _ in range(3):
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(pause_duration_days=1), now=now)
        now += timedelta(hours=1)
        service.resume_subscription(db_session, ctx, gateway, now=now)
        now += timedelta(hours=1)

    with pytest.raises(AlreadyInState) as exc_info:
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(pause_duration_days=1), now=now)

    assert exc_info.value.code == "PAUSE_LIMIT_EXCEEDED"
    assert db_session.scalar(select(Subscription.pause_count)) == 3


@pytest.mark.parametrize("days", [0, -3, 181])
def test_pause_duration_is_validated_first(db_session: Session, ctx: AuthContext, gateway: FakeGateway, days) -> None:
    with pytest.raises(InvalidRequest) as exc_info:
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(pause_duration_days=days), now=T0)
    assert exc_info.value.code == "INVALID_PAUSE_DURATION"


def test_pause_rejections(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    with pytest.raises(NotFound):
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)

    _create(db_session, ctx, gateway, "free")
    with pytest.raises(AlreadyInState) as free_plan:
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)
    assert free_plan.value.code == "FREE_PLAN_NOT_PAUSABLE"

    pending = _create(db_session, ctx, gateway, "pro").data.subscription
    with pytest.raises(AlreadyInState) as not_entitled:
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)
    assert not_entitled.value.code == "INVALID_STATE_TRANSITION"

    with pytest.raises(AlreadyInState) as not_paused:
        service.resume_subscription(db_session, ctx, gateway, now=T0)
    assert not_paused.value.code == "SUBSCRIPTION_NOT_PAUSED"

    activate(db_session, pending.id)
    service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)
    with pytest.raises(AlreadyInState) as already:
        service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)
    assert already.value.code == "SUBSCRIPTION_ALREADY_PAUSED"


def test_pause_survives_gateway_failure(db_session: Session, ctx: AuthContext, gateway: FakeGateway) -> None:
    _active_pro(db_session, ctx, gateway)
    gateway.fail("pause_subscription", status_code=500)

    result = service.pause_subscription(db_session, ctx, gateway, PauseSubscriptionRequest(), now=T0)

    assert result.data.subscription.status == SubscriptionStatus.PAUSED


def test_status_without_subscription_falls_back_to_free(db_session: Session, ctx: AuthContext) -> None:
    status = service.get_subscription_status(db_session, ctx, now=T0).data

    assert status.has_subscription is False
    assert status.plan_code == "free"
    assert status.is_active is True
    assert status.limits["projects"] == 5


def test_history_and_transactions_are_scoped_to_caller(
    db_session: Session, ctx: AuthContext, gateway: FakeGateway
) -> None:
    _create(db_session, ctx, gateway, "free")
    _create(db_session, ctx, gateway, "pro")
    other = AuthContext(user_id="user-2")
    _create(db_session, other, gateway, "plus")

    history = service.list_subscriptions(db_session, ctx, now=T0).data.subscriptions
    assert [item.plan_code for item in history] == ["pro", "free"]

    page = service.get_transaction_history(db_session, ctx, limit=2, offset=0).data
    assert page.total == 3
    assert len(page.transactions) == 2
    assert {item.plan_code for item in page.transactions} <= {"free", "pro"}

    rest = service.get_transaction_history(db_session, ctx, limit=2, offset=2).data
    assert len(rest.transactions) == 1

    clamped = service.get_transaction_history(db_session, ctx, limit=500, offset=-4).data
    assert clamped.limit == 100
    assert clamped.offset == 0

    assert service.list_subscriptions(db_session, other, now=T0).data.subscriptions[0].plan_code == "plus"


def test_list_plans() -> None:
    result = service.list_plans()

    assert result.success is True
    assert [plan.code for plan in result.data.plans] == ["free", "pro", "plus"]
    assert result.data.plans[1].is_featured is True
