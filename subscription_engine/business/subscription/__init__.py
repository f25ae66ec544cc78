from subscription_engine.business.subscription.access import AccessState, derive_access_state, is_current
from subscription_engine.business.subscription.api import router
from subscription_engine.business.subscription.credits import CreditService, credit_service
from subscription_engine.business.subscription.errors import (
    AlreadyInState,
    AuthenticationRequired,
    ConfigurationError,
    GatewayTransientError,
    InvalidRequest,
    LifecycleError,
    NotFound,
    PaymentNotCaptured,
)
from subscription_engine.business.subscription.maintenance import MaintenanceService, maintenance_service
from subscription_engine.business.subscription.models import (
    Subscription,
    SubscriptionCredit,
    SubscriptionStatus,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
)
from subscription_engine.business.subscription.proration import (
    DailyProrationStrategy,
    NoProrationStrategy,
    ProrationQuote,
    ProrationStrategy,
)
from subscription_engine.business.subscription.service import (
    SubscriptionLifecycleService,
    subscription_lifecycle_service,
)
from subscription_engine.business.subscription.verification import (
    PaymentVerificationService,
    payment_verification_service,
)
from subscription_engine.business.subscription.webhooks import WebhookProcessor, webhook_processor

__all__ = [
    "router",
    "AccessState",
    "derive_access_state",
    "is_current",
    "Subscription",
    "SubscriptionCredit",
    "SubscriptionStatus",
    "SubscriptionTransaction",
    "TransactionStatus",
    "TransactionType",
    "LifecycleError",
    "AuthenticationRequired",
    "InvalidRequest",
    "NotFound",
    "AlreadyInState",
    "ConfigurationError",
    "GatewayTransientError",
    "PaymentNotCaptured",
    "ProrationQuote",
    "ProrationStrategy",
    "DailyProrationStrategy",
    "NoProrationStrategy",
    "SubscriptionLifecycleService",
    "subscription_lifecycle_service",
    "PaymentVerificationService",
    "payment_verification_service",
    "WebhookProcessor",
    "webhook_processor",
    "CreditService",
    "credit_service",
    "MaintenanceService",
    "maintenance_service",
]
