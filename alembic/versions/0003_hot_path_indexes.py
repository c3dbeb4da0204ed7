"""add hot-path indexes for transaction history and outbox claims

Revision ID: 0003_hot_path_indexes
Revises: 0002_transactions_append_only
Create Date: 2026-10-19
"""

from alembic import op


revision = "0003_hot_path_indexes"
down_revision = "0002_transactions_append_only"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_transactions_from_created",
        "transactions",
        ["from_account_id", "created_at"],
    )
    op.create_index(
        "ix_transactions_to_created",
        "transactions",
        ["to_account_id", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_producer_status_created_at",
        "outbox_events",
        ["producer", "status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_producer_status_created_at", table_name="outbox_events")
    op.drop_index("ix_transactions_to_created", table_name="transactions")
    op.drop_index("ix_transactions_from_created", table_name="transactions")
