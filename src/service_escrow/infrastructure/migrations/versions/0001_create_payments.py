"""create payments and payment_events

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_ref", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("service_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("protection_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("transferred_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("fee_collected", sa.Boolean(), nullable=False),
        sa.Column("protection_fee_details", JSONType, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("destination_account_id", sa.String(64), nullable=False),
        sa.Column("external_intent_id", sa.String(255), nullable=False, unique=True),
        sa.Column("external_charge_id", sa.String(255), nullable=True),
        sa.Column("external_transfer_id", sa.String(255), nullable=True),
        sa.Column("external_refund_id", sa.String(255), nullable=True),
        sa.Column("service_task_id", sa.Uuid(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'ESCROWED', 'RELEASED', "
            "'FAILED', 'CANCELLED', 'REFUNDED', 'DISPUTED')",
            name="ck_payment_valid_status",
        ),
        sa.CheckConstraint("service_amount > 0", name="ck_payment_positive_service"),
        sa.CheckConstraint("protection_fee >= 0", name="ck_payment_fee_non_negative"),
        sa.CheckConstraint(
            "transferred_amount >= 0 AND transferred_amount <= service_amount",
            name="ck_payment_transfer_bounds",
        ),
        sa.CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= total_amount",
            name="ck_payment_refund_bounds",
        ),
    )
    op.create_index("idx_payment_order_ref", "payments", ["order_ref"])
    op.create_index("idx_payment_status", "payments", ["status"])
    op.create_index("idx_payment_charge", "payments", ["external_charge_id"])
    op.create_index("idx_payment_created_at", "payments", ["created_at"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "payment_id",
            sa.Uuid(),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_event_payment", "payment_events", ["payment_id"])
    op.create_index("idx_event_type", "payment_events", ["event_type"])
    op.create_index("idx_event_created_at", "payment_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("payment_events")
    op.drop_table("payments")
