"""create metered billing schema

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("client_source", sa.String(), nullable=False, server_default="api"),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("contact_email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_clients_code", "clients", ["code"], unique=True)

    op.create_table(
        "client_product_configs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("webhook_url", sa.String(), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.String(), nullable=True),
        sa.Column("success_url", sa.String(), nullable=True),
        sa.Column("fail_url", sa.String(), nullable=True),
        sa.Column("allow_overdraft", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_id", "product_id", name="uq_client_product_config"),
    )
    op.create_index("ix_client_product_configs_client_id", "client_product_configs", ["client_id"], unique=False)

    op.create_table(
        "client_api_keys",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("api_key_hash", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_client_api_keys_client_id", "client_api_keys", ["client_id"], unique=False)
    op.create_index("ix_client_api_keys_api_key_hash", "client_api_keys", ["api_key_hash"], unique=True)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_ledger_client_id", "credit_ledger", ["client_id"], unique=False)
    op.create_index("ix_credit_ledger_reference_id", "credit_ledger", ["reference_id"], unique=False)
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_ledger_client_product_created",
        "credit_ledger",
        ["client_id", "product_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "pricing_tiers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("tier_name", sa.String(), nullable=False),
        sa.Column("min_volume", sa.Integer(), nullable=False),
        sa.Column("max_volume", sa.Integer(), nullable=True),
        sa.Column("credits_per_unit", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pricing_tiers_client_id", "pricing_tiers", ["client_id"], unique=False)

    op.create_table(
        "verification_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("ref_id", sa.String(length=32), nullable=False),
        sa.Column("onboarding_id", sa.String(), nullable=True),
        sa.Column("onboarding_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("result", sa.String(), nullable=True),
        sa.Column("reject_message", sa.String(), nullable=True),
        sa.Column("document_name", sa.String(), nullable=True),
        sa.Column("document_number", sa.String(), nullable=True),
        sa.Column("document_type", sa.String(), nullable=False, server_default="1"),
        sa.Column("front_document_key", sa.String(), nullable=True),
        sa.Column("back_document_key", sa.String(), nullable=True),
        sa.Column("face_image_key", sa.String(), nullable=True),
        sa.Column("best_frame_key", sa.String(), nullable=True),
        sa.Column("provider_response", sa.JSON(), nullable=True),
        sa.Column("billed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billed_credits", sa.Integer(), nullable=True),
        sa.Column("billing_tier_name", sa.String(), nullable=True),
        sa.Column("billing_sequence", sa.Integer(), nullable=True),
        sa.Column("webhook_url", sa.String(), nullable=True),
        sa.Column("webhook_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("webhook_delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("webhook_last_error", sa.String(), nullable=True),
        sa.Column("success_url", sa.String(), nullable=True),
        sa.Column("fail_url", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_verification_sessions_client_id", "verification_sessions", ["client_id"], unique=False)
    op.create_index("ix_verification_sessions_ref_id", "verification_sessions", ["ref_id"], unique=True)
    op.create_index("ix_verification_sessions_status", "verification_sessions", ["status"], unique=False)
    op.create_index("ix_verification_sessions_billed_at", "verification_sessions", ["billed_at"], unique=False)

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payload_hash", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["verification_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payload_hash"),
    )
    op.create_index("ix_webhook_logs_session_id", "webhook_logs", ["session_id"], unique=False)

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("total_usage_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("previous_balance_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_balance_at_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_due_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_due_currency", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Numeric(5, 4), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_with_tax", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("amount_paid_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid_currency", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("superseded_by_invoice_id", sa.String(), nullable=True),
        sa.Column("document_key", sa.String(), nullable=True),
        sa.Column("generated_by", sa.String(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.ForeignKeyConstraint(["superseded_by_invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_client_id", "invoices", ["client_id"], unique=False)
    op.create_index("ix_invoices_invoice_number", "invoices", ["invoice_number"], unique=True)
    op.create_index("ix_invoices_status", "invoices", ["status"], unique=False)

    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=False),
        sa.Column("line_type", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("tier_name", sa.String(), nullable=True),
        sa.Column("session_count", sa.Integer(), nullable=True),
        sa.Column("credits_per_session", sa.Integer(), nullable=True),
        sa.Column("reference_invoice_id", sa.String(), nullable=True),
        sa.Column("reference_invoice_number", sa.String(), nullable=True),
        sa.Column("total_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_currency", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoice_line_items_invoice_id", "invoice_line_items", ["invoice_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("receipt_number", sa.String(), nullable=False),
        sa.Column("amount_credits", sa.Integer(), nullable=False),
        sa.Column("amount_currency", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("receipt_document_key", sa.String(), nullable=True),
        sa.Column("recorded_by", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_invoice_id", "payments", ["invoice_id"], unique=False)
    op.create_index("ix_payments_client_id", "payments", ["client_id"], unique=False)
    op.create_index("ix_payments_receipt_number", "payments", ["receipt_number"], unique=True)

    op.create_table(
        "tenant_billing_periods",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="unpaid"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("recorded_by", sa.String(), nullable=True),
        sa.Column("webhook_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("webhook_last_error", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_id", "period_start", name="uq_tenant_billing_period_start"),
    )
    op.create_index("ix_tenant_billing_periods_client_id", "tenant_billing_periods", ["client_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_tenant_billing_periods_client_id", table_name="tenant_billing_periods")
    op.drop_table("tenant_billing_periods")
    op.drop_index("ix_payments_receipt_number", table_name="payments")
    op.drop_index("ix_payments_client_id", table_name="payments")
    op.drop_index("ix_payments_invoice_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_invoice_line_items_invoice_id", table_name="invoice_line_items")
    op.drop_table("invoice_line_items")
    op.drop_index("ix_invoices_status", table_name="invoices")
    op.drop_index("ix_invoices_invoice_number", table_name="invoices")
    op.drop_index("ix_invoices_client_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_webhook_logs_session_id", table_name="webhook_logs")
    op.drop_table("webhook_logs")
    op.drop_index("ix_verification_sessions_billed_at", table_name="verification_sessions")
    op.drop_index("ix_verification_sessions_status", table_name="verification_sessions")
    op.drop_index("ix_verification_sessions_ref_id", table_name="verification_sessions")
    op.drop_index("ix_verification_sessions_client_id", table_name="verification_sessions")
    op.drop_table("verification_sessions")
    op.drop_index("ix_pricing_tiers_client_id", table_name="pricing_tiers")
    op.drop_table("pricing_tiers")
    op.drop_index("ix_credit_ledger_client_product_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_reference_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_client_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_client_api_keys_api_key_hash", table_name="client_api_keys")
    op.drop_index("ix_client_api_keys_client_id", table_name="client_api_keys")
    op.drop_table("client_api_keys")
    op.drop_index("ix_client_product_configs_client_id", table_name="client_product_configs")
    op.drop_table("client_product_configs")
    op.drop_index("ix_clients_code", table_name="clients")
    op.drop_table("clients")
