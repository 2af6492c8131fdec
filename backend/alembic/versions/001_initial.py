"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False, default: str | None = None) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(12, 2),
        nullable=nullable,
        server_default=default,
    )


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("address", sa.String(255), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Providers (studios and artists)
    op.create_table(
        "providers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        _money("hourly_rate", default="0.00"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="LKR"),
        sa.Column("services", sa.JSON(), nullable=True),
        sa.Column("equipment", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("hourly_rate >= 0", name="ck_provider_hourly_rate_positive"),
        sa.CheckConstraint("kind IN ('studio', 'artist')", name="ck_provider_kind"),
    )
    op.create_index("ix_providers_user_id", "providers", ["user_id"])

    op.create_table(
        "provider_availabilities",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "provider_id", UUID(as_uuid=True), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("days_of_week", sa.JSON(), nullable=True),
        sa.Column("start_time", sa.Time(), nullable=True),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "(days_of_week IS NOT NULL AND start_time IS NOT NULL AND end_time IS NOT NULL) "
            "OR (starts_at IS NOT NULL AND ends_at IS NOT NULL)",
            name="ck_availability_recurring_or_one_off",
        ),
    )
    op.create_index("ix_provider_availabilities_provider_id", "provider_availabilities", ["provider_id"])

    # Bookings
    op.create_table(
        "bookings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "provider_id", UUID(as_uuid=True), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("provider_kind", sa.String(10), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("service", sa.JSON(), nullable=True),
        sa.Column("services", sa.JSON(), nullable=True),
        sa.Column("equipment", sa.JSON(), nullable=True),
        _money("base_price"),
        _money("total_price"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="LKR"),
        sa.Column("payhere_order_id", sa.String(100), nullable=True),
        sa.Column("payhere_payment_id", sa.String(100), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("client_notes", sa.Text(), nullable=True),
        sa.Column("provider_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(10), nullable=True),
        _money("refund_amount", nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("end_time > start_time", name="ck_booking_window_order"),
        sa.CheckConstraint("base_price >= 0", name="ck_booking_base_price_positive"),
        sa.CheckConstraint("total_price >= 0", name="ck_booking_total_price_positive"),
        sa.CheckConstraint(
            "refund_amount IS NULL OR (refund_amount >= 0 AND refund_amount <= total_price)",
            name="ck_booking_refund_amount_range",
        ),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payhere_order_id", "bookings", ["payhere_order_id"])
    op.create_index("ix_booking_provider_window", "bookings", ["provider_id", "start_time", "end_time"])
    op.create_index("ix_booking_status_created", "bookings", ["status", "created_at"])
    op.create_index("ix_booking_client_created", "bookings", ["client_id", "created_at"])

    # Payment records
    op.create_table(
        "payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("payhere_order_id", sa.String(100), nullable=False, unique=True),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("client_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "provider_id", UUID(as_uuid=True), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("status", sa.String(20), nullable=False),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("booking_snapshot", sa.JSON(), nullable=False),
        sa.Column("status_history", sa.JSON(), nullable=False),
        sa.Column("payhere_payment_id", sa.String(100), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        _money("refund_amount", nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refund_reference", sa.String(100), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount >= 0", name="ck_payment_amount_positive"),
        sa.CheckConstraint(
            "refund_amount IS NULL OR refund_amount <= amount", name="ck_payment_refund_not_above_amount"
        ),
    )
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_index("ix_payments_client_id", "payments", ["client_id"])
    op.create_index("ix_payments_provider_id", "payments", ["provider_id"])
    op.create_index("ix_payments_payhere_payment_id", "payments", ["payhere_payment_id"])

    # Revenue records and their child rows
    op.create_table(
        "revenue_records",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "booking_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bookings.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "provider_id", UUID(as_uuid=True), sa.ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("client_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("breakdown", sa.JSON(), nullable=False),
        _money("subtotal"),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False),
        _money("commission_amount"),
        _money("provider_earnings"),
        _money("total_amount"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_id", sa.String(100), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("subtotal >= 0", name="ck_revenue_subtotal_positive"),
        sa.CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1", name="ck_revenue_commission_rate_range"
        ),
        sa.CheckConstraint("provider_earnings >= 0", name="ck_revenue_earnings_positive"),
    )
    op.create_index("ix_revenue_records_provider_id", "revenue_records", ["provider_id"])
    op.create_index(
        "ix_revenue_provider_status_created", "revenue_records", ["provider_id", "status", "created_at"]
    )

    op.create_table(
        "revenue_refunds",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "revenue_id",
            UUID(as_uuid=True),
            sa.ForeignKey("revenue_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("amount"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("refund_reference", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("external_reference", sa.String(100), nullable=True),
        sa.Column("processed_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_revenue_refund_amount_positive"),
    )
    op.create_index("ix_revenue_refunds_revenue_id", "revenue_refunds", ["revenue_id"])

    op.create_table(
        "revenue_adjustments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "revenue_id",
            UUID(as_uuid=True),
            sa.ForeignKey("revenue_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("amount"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("applied_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount <> 0", name="ck_revenue_adjustment_non_zero"),
    )
    op.create_index("ix_revenue_adjustments_revenue_id", "revenue_adjustments", ["revenue_id"])

    op.create_table(
        "revenue_payouts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "revenue_id",
            UUID(as_uuid=True),
            sa.ForeignKey("revenue_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("amount"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payout_reference", sa.String(100), nullable=True),
        sa.Column("bank_details", sa.JSON(), nullable=True),
        sa.Column("requested_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("processed_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_revenue_payout_amount_positive"),
    )
    op.create_index("ix_revenue_payouts_revenue_id", "revenue_payouts", ["revenue_id"])

    # Wallet ledger
    op.create_table(
        "wallets",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
            unique=True,
        ),
        _money("available_balance", default="0.00"),
        _money("pending_balance", default="0.00"),
        _money("total_balance", default="0.00"),
        _money("total_earnings", default="0.00"),
        _money("total_withdrawals", default="0.00"),
        _money("total_commissions", default="0.00"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="LKR"),
        sa.Column("bank_name", sa.String(100), nullable=True),
        sa.Column("account_number", sa.String(50), nullable=True),
        sa.Column("account_holder_name", sa.String(150), nullable=True),
        sa.Column("account_type", sa.String(20), nullable=True),
        sa.Column("branch_code", sa.String(20), nullable=True),
        sa.Column("swift_code", sa.String(20), nullable=True),
        sa.Column("bank_details_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _money("minimum_withdrawal"),
        sa.Column("auto_withdrawal_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _money("auto_withdrawal_threshold"),
        sa.Column("last_transaction_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("available_balance >= 0", name="ck_wallet_available_non_negative"),
        sa.CheckConstraint("pending_balance >= 0", name="ck_wallet_pending_non_negative"),
        sa.CheckConstraint("total_balance >= 0", name="ck_wallet_total_non_negative"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("wallet_id", UUID(as_uuid=True), sa.ForeignKey("wallets.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        _money("amount"),
        _money("net_amount"),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False, server_default="0"),
        _money("commission_amount", default="0.00"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="LKR"),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("booking_id", UUID(as_uuid=True), sa.ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True),
        sa.Column("payment_id", sa.String(100), nullable=True),
        sa.Column("order_id", sa.String(100), nullable=True),
        sa.Column("idempotency_key", sa.String(150), nullable=True, unique=True),
        sa.Column(
            "reference_transaction_id",
            UUID(as_uuid=True),
            sa.ForeignKey("wallet_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("withdrawal_method", sa.String(20), nullable=True),
        sa.Column("bank_account", sa.JSON(), nullable=True),
        sa.Column("processed_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        sa.CheckConstraint("net_amount >= 0", name="ck_wallet_tx_net_non_negative"),
    )
    op.create_index("ix_wallet_transactions_wallet_id", "wallet_transactions", ["wallet_id"])
    op.create_index("ix_wallet_transactions_status", "wallet_transactions", ["status"])
    op.create_index("ix_wallet_transactions_booking_id", "wallet_transactions", ["booking_id"])
    op.create_index("ix_wallet_tx_wallet_created", "wallet_transactions", ["wallet_id", "created_at"])
    op.create_index("ix_wallet_tx_type_status", "wallet_transactions", ["type", "status"])

    # Settlement recovery and reconciliation
    op.create_table(
        "settlement_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "booking_id",
            UUID(as_uuid=True),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("order_id", sa.String(100), nullable=False),
        sa.Column("payhere_payment_id", sa.String(100), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        _money("amount"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("booking_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revenue_record_id", UUID(as_uuid=True), nullable=True),
        sa.Column("wallet_transaction_id", UUID(as_uuid=True), nullable=True),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_step", sa.String(30), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_settlement_run_status_updated", "settlement_runs", ["status", "updated_at"])

    op.create_table(
        "reconciliation_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("order_id", sa.String(100), nullable=True),
        sa.Column("booking_id", UUID(as_uuid=True), nullable=True),
        sa.Column("payhere_payment_id", sa.String(100), nullable=True),
        _money("amount", nullable=True),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
    )
    op.create_index("ix_reconciliation_items_kind", "reconciliation_items", ["kind"])
    op.create_index("ix_reconciliation_items_order_id", "reconciliation_items", ["order_id"])
    op.create_index("ix_reconciliation_open", "reconciliation_items", ["resolved_at", "created_at"])

    # Webhook dedup, notifications, audit trail
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("outcome", sa.String(50), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "notifications",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notification_user_created", "notifications", ["user_id", "created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "actor_user_id", UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_log_entity", "audit_logs", ["entity_type", "entity_id", "created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("notifications")
    op.drop_table("processed_webhook_events")
    op.drop_table("reconciliation_items")
    op.drop_table("settlement_runs")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_table("revenue_payouts")
    op.drop_table("revenue_adjustments")
    op.drop_table("revenue_refunds")
    op.drop_table("revenue_records")
    op.drop_table("payments")
    op.drop_table("bookings")
    op.drop_table("provider_availabilities")
    op.drop_table("providers")
    op.drop_table("users")
