"""record why a payment was cancelled

Revision ID: 0004_payment_cancel_reason
Revises: 0003_hot_path_indexes
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0004_payment_cancel_reason"
down_revision = "0003_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("payment_records", sa.Column("cancel_reason", sa.String(), nullable=True))
    op.create_index(
        "ix_payment_records_kind_status_verification",
        "payment_records",
        ["kind", "status", "needs_verification"],
    )


def downgrade() -> None:
    op.drop_index("ix_payment_records_kind_status_verification", table_name="payment_records")
    op.drop_column("payment_records", "cancel_reason")
