from subscription_engine.business.payments.gateway import (
    CustomerCreated,
    CustomerProfile,
    GatewayRequestError,
    PaymentFetched,
    PaymentGateway,
    RefundCreated,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionPaused,
    SubscriptionResumed,
    is_benign_cancellation_error,
)
from subscription_engine.business.payments.razorpay_gateway import RazorpayGateway, get_gateway

__all__ = [
    "PaymentGateway",
    "RazorpayGateway",
    "get_gateway",
    "GatewayRequestError",
    "is_benign_cancellation_error",
    "CustomerProfile",
    "CustomerCreated",
    "SubscriptionCreated",
    "SubscriptionCancelled",
    "SubscriptionPaused",
    "SubscriptionResumed",
    "PaymentFetched",
    "RefundCreated",
]
