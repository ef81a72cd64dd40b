from postflow.core.repositories.base import OrganizationRepository
from postflow.core.repositories.subscriptions import (
    SqlSubscriptionStore,
    SubscriptionStore,
    TransactionDraft,
)

__all__ = [
    "OrganizationRepository",
    "SqlSubscriptionStore",
    "SubscriptionStore",
    "TransactionDraft",
]
