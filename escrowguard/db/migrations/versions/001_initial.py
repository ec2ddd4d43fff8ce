"""Initial schema - escrow ledger and dispute resolution tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _base_columns() -> list[sa.Column]:
    """id, soft-delete and timestamp columns shared by every table."""
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _fk(name: str, target: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(
        name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target), nullable=nullable, index=True, **kw
    )


def _money(name: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable, **kw)


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="customer"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("default_payment_method_id", sa.String(255), nullable=True),
        sa.Column("stripe_account_id", sa.String(255), nullable=True),
    )

    # Bookings
    op.create_table(
        "bookings",
        *_base_columns(),
        _fk("customer_id", "users.id"),
        _fk("vendor_id", "users.id"),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
    )

    # Escrow ledger
    op.create_table(
        "escrow_transactions",
        *_base_columns(),
        _fk("booking_id", "bookings.id", unique=True),
        _fk("customer_id", "users.id"),
        _fk("vendor_id", "users.id"),
        _money("original_amount"),
        _money("amount"),
        _money("refunded_amount", server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default="chf"),
        _money("platform_fee"),
        _money("vendor_amount"),
        sa.Column("status", sa.String(30), nullable=False, server_default="held", index=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
    )

    # Dispute cases
    op.create_table(
        "dispute_cases",
        *_base_columns(),
        _fk("escrow_id", "escrow_transactions.id"),
        _fk("booking_id", "bookings.id"),
        _fk("customer_id", "users.id"),
        _fk("vendor_id", "users.id"),
        sa.Column("opened_by", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("evidence", postgresql.JSONB, nullable=True),
        sa.Column("phase", sa.String(30), nullable=False, server_default="open", index=True),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("phase_entered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("phase_deadline", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("reminder_sent_for", sa.String(30), nullable=True),
        sa.Column("resolution_source", sa.String(30), nullable=True),
        sa.Column("outcome_summary", sa.Text, nullable=True),
        _money("customer_amount", nullable=True),
        _money("vendor_amount", nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mediation_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("decision_attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_capability_error", sa.Text, nullable=True),
        sa.Column("needs_operator", sa.Boolean, nullable=False, server_default=sa.text("false"), index=True),
        sa.Column("operator_note", sa.Text, nullable=True),
        sa.Column("history", postgresql.JSONB, nullable=True),
    )
    op.create_index(
        "uq_dispute_active_escrow",
        "dispute_cases",
        ["escrow_id"],
        unique=True,
        postgresql_where=sa.text("phase NOT IN ('resolved', 'external')"),
    )

    # Phase 1: negotiation offers
    op.create_table(
        "negotiation_offers",
        *_base_columns(),
        _fk("dispute_id", "dispute_cases.id"),
        sa.Column("proposed_by", sa.String(20), nullable=False),
        _money("customer_amount"),
        _money("vendor_amount"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("accepted", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn", sa.Boolean, nullable=False, server_default=sa.text("false")),
    )

    # Phase 2: mediation options
    op.create_table(
        "mediation_options",
        *_base_columns(),
        _fk("dispute_id", "dispute_cases.id"),
        sa.Column("label", sa.String(1), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("customer_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("vendor_percent", sa.Numeric(5, 2), nullable=False),
        _money("customer_amount"),
        _money("vendor_amount"),
        sa.Column("rationale", sa.Text, nullable=False),
        sa.Column("key_factors", postgresql.JSONB, nullable=True),
        sa.Column("is_recommended", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("customer_response", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("vendor_response", sa.String(20), nullable=False, server_default="pending"),
        sa.UniqueConstraint("dispute_id", "label", name="uq_mediation_option_label"),
    )

    # Phase 3: binding decisions
    op.create_table(
        "binding_decisions",
        *_base_columns(),
        _fk("dispute_id", "dispute_cases.id", unique=True),
        sa.Column("customer_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("vendor_percent", sa.Numeric(5, 2), nullable=False),
        _money("customer_amount"),
        _money("vendor_amount"),
        sa.Column("summary", sa.Text, nullable=False),
        sa.Column("rationale", sa.Text, nullable=False),
        sa.Column("key_factors", postgresql.JSONB, nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accept_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("customer_response", sa.String(20), nullable=True),
        sa.Column("vendor_response", sa.String(20), nullable=True),
        sa.Column("customer_responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vendor_responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
    )

    # Dispute fees
    op.create_table(
        "dispute_fee_charges",
        *_base_columns(),
        _fk("dispute_id", "dispute_cases.id"),
        _fk("user_id", "users.id"),
        sa.Column("party", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(30), nullable=False),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="chf"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
        sa.UniqueConstraint("dispute_id", "reason", name="uq_dispute_fee_reason"),
    )

    # Settlement outbox
    op.create_table(
        "settlement_intents",
        *_base_columns(),
        _fk("dispute_id", "dispute_cases.id", unique=True),
        _fk("escrow_id", "escrow_transactions.id"),
        sa.Column("kind", sa.String(20), nullable=False),
        _money("customer_amount"),
        _money("vendor_amount"),
        sa.Column("idempotency_key", sa.String(100), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("refund_reference", sa.String(255), nullable=True),
        sa.Column("transfer_reference", sa.String(255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Notifications
    op.create_table(
        "notifications",
        *_base_columns(),
        _fk("user_id", "users.id"),
        _fk("dispute_id", "dispute_cases.id", nullable=True),
        sa.Column("channel", sa.String(20), nullable=False, server_default="in_app"),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
    )


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("settlement_intents")
    op.drop_table("dispute_fee_charges")
    op.drop_table("binding_decisions")
    op.drop_table("mediation_options")
    op.drop_table("negotiation_offers")
    op.drop_index("uq_dispute_active_escrow", table_name="dispute_cases")
    op.drop_table("dispute_cases")
    op.drop_table("escrow_transactions")
    op.drop_table("bookings")
    op.drop_table("users")
