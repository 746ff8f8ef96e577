"""Queue entries keyed by logical submission (idTrans + acti/typTrans)

Revision ID: 0002_queue_operation
Revises: 0001_websrm_queue
Create Date: 2025-10-21
"""
import json

from alembic import op
import sqlalchemy as sa


revision = "0002_queue_operation"
down_revision = "0001_websrm_queue"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("fiscal_queue_entries") as batch:
        batch.add_column(sa.Column("operation", sa.String(), nullable=True))

    conn = op.get_bind()
    entries = sa.table(
        "fiscal_queue_entries",
        sa.column("id", sa.Integer), sa.column("kind", sa.String),
        sa.column("payload", sa.Text), sa.column("operation", sa.String),
    )
    for row in conn.execute(sa.select(entries.c.id, entries.c.kind, entries.c.payload)).fetchall():
        body = json.loads(row.payload)
        if row.kind == "closing":
            operation = "FER"
        else:
            operation = f"{body.get('acti')}/{body.get('typTrans')}"
        conn.execute(entries.update().where(entries.c.id == row.id).values(operation=operation))

    with op.batch_alter_table("fiscal_queue_entries") as batch:
        batch.alter_column("operation", existing_type=sa.String(), nullable=False)
        batch.drop_constraint("uq_fiscal_queue_device_trans", type_="unique")
        batch.create_unique_constraint(
            "uq_fiscal_queue_submission", ["device_id", "kind", "id_trans", "operation"],
        )


def downgrade() -> None:
    with op.batch_alter_table("fiscal_queue_entries") as batch:
        batch.drop_constraint("uq_fiscal_queue_submission", type_="unique")
        batch.create_unique_constraint("uq_fiscal_queue_device_trans", ["device_id", "kind", "id_trans"])
        batch.drop_column("operation")
