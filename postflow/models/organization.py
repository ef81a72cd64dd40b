from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from postflow.models.base import OrganizationScopedBase, TimestampedBase

PAYPAL_CUSTOMER_PREFIX = "paypal_"


class PaymentProvider(str, Enum):
    RAZORPAY = "RAZORPAY"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    MANUAL = "MANUAL"


class MemberRole(str, Enum):
    SUPERADMIN = "SUPERADMIN"
    ADMIN = "ADMIN"
    USER = "USER"


@dataclass(frozen=True, slots=True)
class ExternalCustomerRef:
    """Typed view over ``Organization.payment_id``.

    The column historically holds either a bare Stripe/Razorpay customer id
    or a ``paypal_<payerId>`` composite. New writes go through ``encode`` so
    the provider can always be recovered from the stored string.
    """

    provider: PaymentProvider | None
    id: str

    @classmethod
    def parse(cls, value: str) -> ExternalCustomerRef:
        if value.startswith(PAYPAL_CUSTOMER_PREFIX):
            return cls(provider=PaymentProvider.PAYPAL, id=value[len(PAYPAL_CUSTOMER_PREFIX):])
        if value.startswith("cus_"):
            return cls(provider=PaymentProvider.STRIPE, id=value)
        if value.startswith("cust_"):
            return cls(provider=PaymentProvider.RAZORPAY, id=value)
        return cls(provider=None, id=value)

    def encode(self) -> str:
        if self.provider is PaymentProvider.PAYPAL:
            return f"{PAYPAL_CUSTOMER_PREFIX}{self.id}"
        return self.id


class Organization(TimestampedBase):
    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    is_trailing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def external_customer(self) -> ExternalCustomerRef | None:
        if not self.payment_id:
            return None
        return ExternalCustomerRef.parse(self.payment_id)


class OrganizationMember(OrganizationScopedBase):
    __tablename__ = "organization_members"

    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=MemberRole.USER.value)
    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
