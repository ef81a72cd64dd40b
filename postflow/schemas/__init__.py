from postflow.schemas.admin import (
    AdminSubscriptionRequest,
    LifetimeGrantRequest,
    PayPalPlansResponse,
    ReconcileResponse,
)
from postflow.schemas.billing import (
    CancelResponse,
    CheckLimitsRequest,
    PlanLimitsResponse,
    QuotaDecisionResponse,
    RetryPaymentRequest,
    RetryPaymentResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionResponse,
    TransactionListResponse,
    TransactionResponse,
    UsageReportResponse,
)
from postflow.schemas.webhooks import WebhookAckResponse

__all__ = [
    "AdminSubscriptionRequest",
    "LifetimeGrantRequest",
    "PayPalPlansResponse",
    "ReconcileResponse",
    "CancelResponse",
    "CheckLimitsRequest",
    "PlanLimitsResponse",
    "QuotaDecisionResponse",
    "RetryPaymentRequest",
    "RetryPaymentResponse",
    "SubscribeRequest",
    "SubscribeResponse",
    "SubscriptionResponse",
    "TransactionListResponse",
    "TransactionResponse",
    "UsageReportResponse",
    "WebhookAckResponse",
]
