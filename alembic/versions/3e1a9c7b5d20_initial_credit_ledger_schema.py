"""Initial credit ledger schema

Revision ID: 3e1a9c7b5d20
Revises:
Create Date: 2026-03-02

Creates:
- profiles: one per auth user, holds both credit pools and mirrored Stripe state
- subscriptions: local mirror of Stripe subscriptions
- credit_transactions: append-only ledger
- dispute_events: one row per Stripe dispute
- sync_runs: maintenance job audit log
- webhook_events: processing record / recovery queue for Stripe events

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "3e1a9c7b5d20"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Step 1: profiles
    op.create_table(
        "profiles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        # Credit pools
        sa.Column(
            "subscription_credits_balance",
            sa.Integer,
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "purchased_credits_balance",
            sa.Integer,
            nullable=False,
            server_default=sa.text("0"),
        ),
        # Mirrored Stripe state
        sa.Column("subscription_tier", sa.String(20), nullable=True),
        sa.Column("subscription_status", sa.String(30), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("dispute_status", sa.String(20), nullable=False, server_default="none"),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "subscription_credits_balance >= 0", name="ck_profiles_subscription_credits"
        ),
        sa.CheckConstraint("purchased_credits_balance >= 0", name="ck_profiles_purchased_credits"),
    )
    op.create_index("ix_profiles_id", "profiles", ["id"])
    op.create_index(
        "ix_profiles_stripe_customer_id", "profiles", ["stripe_customer_id"], unique=True
    )

    # Step 2: subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("price_id", sa.String(255), nullable=False),
        # Billing period
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        # Pending downgrade
        sa.Column("scheduled_price_id", sa.String(255), nullable=True),
        sa.Column("scheduled_change_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index(
        "ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"]
    )

    # Step 3: credit_transactions
    op.create_table(
        "credit_transactions",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column(
            "credit_pool",
            sa.String(20),
            nullable=False,
            comment="Pool the entry was applied to: subscription or purchased",
        ),
        sa.Column("reference_id", sa.String(255), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index(
        "ix_credit_transactions_user_reference",
        "credit_transactions",
        ["user_id", "reference_id"],
    )

    # Step 4: dispute_events
    op.create_table(
        "dispute_events",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("dispute_id", sa.String(255), nullable=False),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("charge_id", sa.String(255), nullable=False),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column(
            "credits_held",
            sa.Integer,
            nullable=False,
            comment="Estimated from amount_cents at dispute creation",
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(100), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_dispute_events_dispute_id", "dispute_events", ["dispute_id"], unique=True)
    op.create_index("ix_dispute_events_user_id", "dispute_events", ["user_id"])

    # Step 5: sync_runs
    op.create_table(
        "sync_runs",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("records_processed", sa.Integer, nullable=False),
        sa.Column("records_fixed", sa.Integer, nullable=False),
        sa.Column("discrepancies_found", sa.Integer, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_runs_id", "sync_runs", ["id"])
    op.create_index("ix_sync_runs_job_started", "sync_runs", ["job_type", "started_at"])

    # Step 6: webhook_events
    op.create_table(
        "webhook_events",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column(
            "recoverable",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_events_id", "webhook_events", ["id"])
    op.create_index("ix_webhook_events_event_id", "webhook_events", ["event_id"], unique=True)
    op.create_index("ix_webhook_events_status_created", "webhook_events", ["status", "created_at"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("sync_runs")
    op.drop_table("dispute_events")
    op.drop_table("credit_transactions")
    op.drop_table("subscriptions")
    op.drop_table("profiles")
