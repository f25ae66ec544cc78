from celery import Celery

from subscription_engine.core.config import get_settings
from subscription_engine.core.database import session_scope

settings = get_settings()

celery_app = Celery("subscription_engine", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "expire-unpaid-subscriptions": {
        "task": "subscription_engine.tasks.expire_unpaid_subscriptions",
        "schedule": float(settings.maintenance_interval_seconds),
    },
    "resume-due-subscriptions": {
        "task": "subscription_engine.tasks.resume_due_subscriptions",
        "schedule": float(settings.maintenance_interval_seconds),
    },
    "deactivate-expired-credits": {
        "task": "subscription_engine.tasks.deactivate_expired_credits",
        "schedule": 3600.0,
    },
}


@celery_app.task(name="subscription_engine.tasks.ping")
def ping_task() -> str:
    return "pong"


@celery_app.task(name="subscription_engine.tasks.expire_unpaid_subscriptions")
def expire_unpaid_subscriptions_task() -> int:
    from subscription_engine.business.payments.razorpay_gateway import get_gateway
    from subscription_engine.business.subscription.maintenance import maintenance_service

    with session_scope() as session:
        return maintenance_service.expire_unpaid_subscriptions(session, get_gateway())


@celery_app.task(name="subscription_engine.tasks.resume_due_subscriptions")
def resume_due_subscriptions_task() -> int:
    from subscription_engine.business.payments.razorpay_gateway import get_gateway
    from subscription_engine.business.subscription.maintenance import maintenance_service

    with session_scope() as session:
        return maintenance_service.resume_due_subscriptions(session, get_gateway())


@celery_app.task(name="subscription_engine.tasks.deactivate_expired_credits")
def deactivate_expired_credits_task() -> int:
    from subscription_engine.business.subscription.maintenance import maintenance_service

    with session_scope() as session:
        return maintenance_service.deactivate_expired_credits(session)
