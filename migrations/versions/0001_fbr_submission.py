"""fbr submission tables

Revision ID: 0001_fbr_submission
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_fbr_submission"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ENTRY_PREDICATE = sa.text("state NOT IN ('synced', 'dead_letter')")


def upgrade() -> None:
    """Create tenants, sales, reference data, the queue and the audit log."""
    op.create_table(
        "tenant",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("business_name", sa.Text(), nullable=False),
        sa.Column("ntn", sa.Text(), nullable=False),
        sa.Column("province", sa.Text(), nullable=False),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "tenant_credential",
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("token_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("nonce", sa.LargeBinary(length=12), nullable=False),
        sa.Column("tag", sa.LargeBinary(length=16), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=False),
        sa.Column("sandbox_mode", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant.id"]),
        sa.PrimaryKeyConstraint("tenant_id"),
    )
    op.create_table(
        "sale",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("reference_number", sa.Text(), nullable=False),
        sa.Column("invoice_type", sa.VARCHAR(length=10), nullable=False),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("original_invoice_ref", sa.Text(), nullable=True),
        sa.Column("buyer_ntn", sa.Text(), nullable=True),
        sa.Column("buyer_name", sa.Text(), nullable=True),
        sa.Column("buyer_province", sa.Text(), nullable=True),
        sa.Column("buyer_address", sa.Text(), nullable=True),
        sa.Column("buyer_registration_type", sa.Text(), nullable=True),
        sa.Column("subtotal", sa.Numeric(18, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fbr_status", sa.VARCHAR(length=20), nullable=False),
        sa.Column("fbr_invoice_number", sa.Text(), nullable=True),
        sa.Column("fbr_error", sa.Text(), nullable=True),
        sa.Column("fbr_synced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "reference_number", name="uq_sale_tenant_reference"),
    )
    op.create_table(
        "sale_item",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.Text(), nullable=False),
        sa.Column("hs_code", sa.Text(), nullable=True),
        sa.Column("unit_of_measure", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount", sa.Numeric(18, 2), nullable=False),
        sa.Column("tax_category", sa.Text(), nullable=False),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("retail_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("sro_schedule_no", sa.Text(), nullable=True),
        sa.Column("sro_item_serial_no", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["sale_id"], ["sale.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "reference_code",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.VARCHAR(length=20), nullable=False),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("refreshed_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "code", name="uq_reference_code_kind_code"),
    )
    op.create_table(
        "tax_rate",
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("sale_type", sa.Text(), nullable=False),
        sa.Column("scenario_id", sa.VARCHAR(length=10), nullable=False),
        sa.Column("retail_priced", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("category"),
    )
    op.create_table(
        "fbr_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("chain_seq", sa.SmallInteger(), nullable=False),
        sa.Column("state", sa.VARCHAR(length=20), nullable=False),
        sa.Column("dead_letter_reason", sa.VARCHAR(length=20), nullable=True),
        sa.Column("attempt_count", sa.SmallInteger(), nullable=False),
        sa.Column("max_attempts", sa.SmallInteger(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("claim_token", sa.CHAR(length=32), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload_snapshot", sa.Text(), nullable=True),
        sa.Column("payload_hash", sa.CHAR(length=64), nullable=True),
        sa.Column("reference_number", sa.Text(), nullable=False),
        sa.Column("fbr_invoice_number", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["sale_id"], ["sale.id"]),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenant.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "sale_id", "chain_seq", name="uq_fbr_queue_chain"),
    )
    op.create_index(
        "uq_fbr_queue_active_sale",
        "fbr_queue",
        ["tenant_id", "sale_id"],
        unique=True,
        sqlite_where=ACTIVE_ENTRY_PREDICATE,
        postgresql_where=ACTIVE_ENTRY_PREDICATE,
    )
    op.create_index("ix_fbr_queue_due", "fbr_queue", ["state", "next_attempt_at"])
    op.create_table(
        "fbr_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("queue_entry_id", sa.Integer(), nullable=True),
        sa.Column("event", sa.VARCHAR(length=30), nullable=False),
        sa.Column("outcome", sa.VARCHAR(length=20), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fbr_audit_log_tenant_id", "fbr_audit_log", ["tenant_id"])


def downgrade() -> None:
    """Drop all FBR submission tables."""
    op.drop_index("ix_fbr_audit_log_tenant_id", table_name="fbr_audit_log")
    op.drop_table("fbr_audit_log")
    op.drop_index("ix_fbr_queue_due", table_name="fbr_queue")
    op.drop_index("uq_fbr_queue_active_sale", table_name="fbr_queue")
    op.drop_table("fbr_queue")
    op.drop_table("tax_rate")
    op.drop_table("reference_code")
    op.drop_table("sale_item")
    op.drop_table("sale")
    op.drop_table("tenant_credential")
    op.drop_table("tenant")
