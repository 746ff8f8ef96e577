"""WEB-SRM delivery queue, event log, receipts, circuit breakers

Revision ID: 0001_websrm_queue
Revises:
Create Date: 2025-10-07
"""
from alembic import op
import sqlalchemy as sa


revision = "0001_websrm_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "fiscal_queue_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("id_trans", sa.String(), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.JSON(), nullable=True),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("device_id", "kind", "id_trans", name="uq_fiscal_queue_device_trans"),
    )
    op.create_index("ix_fiscal_queue_due", "fiscal_queue_entries", ["status", "next_attempt_at"])
    op.create_index("ix_fiscal_queue_device_status", "fiscal_queue_entries", ["device_id", "status"])

    op.create_table(
        "fiscal_queue_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entry_id", sa.Integer(),
                  sa.ForeignKey("fiscal_queue_entries.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("from_status", sa.String(), nullable=True),
        sa.Column("to_status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("response_code", sa.String(), nullable=True),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("actor", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_fiscal_queue_events_entry", "fiscal_queue_events", ["entry_id", "id"])

    op.create_table(
        "fiscal_receipts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entry_id", sa.Integer(),
                  sa.ForeignKey("fiscal_queue_entries.id", ondelete="RESTRICT"), nullable=False, unique=True),
        sa.Column("id_trans", sa.String(), nullable=False),
        sa.Column("id_trans_srm", sa.String(), nullable=True),
        sa.Column("code_qr", sa.Text(), nullable=True),
        sa.Column("receipt_url", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.String(), nullable=True),
        sa.Column("response_code", sa.String(), nullable=True),
        sa.Column("response_body", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "fiscal_circuit_breakers",
        sa.Column("device_id", sa.String(), primary_key=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("open_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("fiscal_circuit_breakers")
    op.drop_table("fiscal_receipts")
    op.drop_index("ix_fiscal_queue_events_entry", table_name="fiscal_queue_events")
    op.drop_table("fiscal_queue_events")
    op.drop_index("ix_fiscal_queue_device_status", table_name="fiscal_queue_entries")
    op.drop_index("ix_fiscal_queue_due", table_name="fiscal_queue_entries")
    op.drop_table("fiscal_queue_entries")
