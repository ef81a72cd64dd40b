from postflow.models.base import Base, OrganizationScopedBase, TimestampedBase
from postflow.models.credit import Credit
from postflow.models.integration import Integration
from postflow.models.organization import (
    ExternalCustomerRef,
    MemberRole,
    Organization,
    OrganizationMember,
    PaymentProvider,
)
from postflow.models.payment_transaction import (
    PaymentTransaction,
    PaymentTransactionStatus,
    PaymentType,
)
from postflow.models.subscription import Subscription
from postflow.models.used_code import UsedCode
from postflow.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "TimestampedBase",
    "OrganizationScopedBase",
    "Organization",
    "OrganizationMember",
    "MemberRole",
    "ExternalCustomerRef",
    "PaymentProvider",
    "Integration",
    "Subscription",
    "PaymentTransaction",
    "PaymentTransactionStatus",
    "PaymentType",
    "Credit",
    "UsedCode",
    "WebhookEvent",
]
