from __future__ import annotations


class BillingError(Exception):
    pass


class UnknownTierError(BillingError, ValueError):
    def __init__(self, tier: object) -> None:
        super().__init__(f"Unknown subscription tier: {tier!r}")
        self.tier = tier


class UnknownPeriodError(BillingError, ValueError):
    def __init__(self, period: object) -> None:
        super().__init__(f"Unknown billing period: {period!r}")
        self.period = period


class QuotaExceededError(BillingError):
    def __init__(self, feature: str, current_usage: int, limit: int, reason: str | None = None) -> None:
        self.feature = feature
        self.current_usage = current_usage
        self.limit = limit
        self.reason = reason or f"Usage limit exceeded: {current_usage}/{limit}"
        super().__init__(self.reason)

    def payload(self) -> dict[str, object]:
        return {
            "feature": self.feature,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "reason": self.reason,
        }


class ProviderAPIError(BillingError):
    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider} API error: {message}")
        self.provider = provider
        self.status_code = status_code


class ProviderNotConfiguredError(BillingError):
    pass


class SignatureVerificationError(BillingError):
    def __init__(self, message: str, *, missing: bool = False) -> None:
        super().__init__(message)
        self.missing = missing


class TransactionNotFoundError(BillingError):
    pass


class BillingConflictError(BillingError):
    pass
