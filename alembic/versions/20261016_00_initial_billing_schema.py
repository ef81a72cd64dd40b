"""create initial billing schema

Revision ID: 20261016_00
Revises:
Create Date: 2026-10-16 09:20:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261016_00"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _organization_fk() -> sa.Column:
    return sa.Column(
        "organization_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("payment_id", sa.String(length=255), nullable=True),
        sa.Column("is_trailing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("allow_trial", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organizations_payment_id", "organizations", ["payment_id"], unique=False)

    op.create_table(
        "organization_members",
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_organization_members_organization_id", "organization_members", ["organization_id"], unique=False
    )

    op.create_table(
        "integrations",
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("provider_identifier", sa.String(length=80), nullable=False),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_integrations_organization_id", "integrations", ["organization_id"], unique=False)

    op.create_table(
        "subscriptions",
        sa.Column("subscription_tier", sa.String(length=20), nullable=False),
        sa.Column("period", sa.String(length=20), nullable=False),
        sa.Column("total_channels", sa.Integer(), nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=True),
        sa.Column("is_lifetime", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_organization_id", "subscriptions", ["organization_id"], unique=False)
    op.create_index("ix_subscriptions_identifier", "subscriptions", ["identifier"], unique=False)
    op.create_index(
        "uq_subscriptions_active_organization",
        "subscriptions",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "payment_transactions",
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("provider_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_payment_transactions_organization_id", "payment_transactions", ["organization_id"], unique=False
    )
    op.create_index(
        "ix_payment_transactions_subscription_id", "payment_transactions", ["subscription_id"], unique=False
    )
    op.create_index(
        "ix_payment_transactions_provider_transaction_id",
        "payment_transactions",
        ["provider_transaction_id"],
        unique=False,
    )
    op.create_index("ix_payment_transactions_status", "payment_transactions", ["status"], unique=False)

    op.create_table(
        "credits",
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="1"),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credits_organization_id", "credits", ["organization_id"], unique=False)
    op.create_index(
        "ix_credits_organization_type_created", "credits", ["organization_id", "type", "created_at"], unique=False
    )

    op.create_table(
        "used_codes",
        sa.Column("code", sa.String(length=255), nullable=False),
        _organization_fk(),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_used_codes_organization_id", "used_codes", ["organization_id"], unique=False)
    op.create_index("ix_used_codes_code", "used_codes", ["code"], unique=True)

    op.create_table(
        "webhook_events",
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")

    op.drop_index("ix_used_codes_code", table_name="used_codes")
    op.drop_index("ix_used_codes_organization_id", table_name="used_codes")
    op.drop_table("used_codes")

    op.drop_index("ix_credits_organization_type_created", table_name="credits")
    op.drop_index("ix_credits_organization_id", table_name="credits")
    op.drop_table("credits")

    op.drop_index("ix_payment_transactions_status", table_name="payment_transactions")
    op.drop_index("ix_payment_transactions_provider_transaction_id", table_name="payment_transactions")
    op.drop_index("ix_payment_transactions_subscription_id", table_name="payment_transactions")
    op.drop_index("ix_payment_transactions_organization_id", table_name="payment_transactions")
    op.drop_table("payment_transactions")

    op.drop_index("uq_subscriptions_active_organization", table_name="subscriptions")
    op.drop_index("ix_subscriptions_identifier", table_name="subscriptions")
    op.drop_index("ix_subscriptions_organization_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("ix_integrations_organization_id", table_name="integrations")
    op.drop_table("integrations")

    op.drop_index("ix_organization_members_organization_id", table_name="organization_members")
    op.drop_table("organization_members")

    op.drop_index("ix_organizations_payment_id", table_name="organizations")
    op.drop_table("organizations")
