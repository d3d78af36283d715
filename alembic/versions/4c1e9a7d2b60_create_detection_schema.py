"""Create detection schema (idempotent).

Revision ID: 4c1e9a7d2b60
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c1e9a7d2b60"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLES_IN_DROP_ORDER = (
    "audit_logs",
    "detection_runs",
    "detection_settings",
    "merchant_subscription_cache",
    "alerts",
    "subscriptions",
    "receipts",
    "transactions",
    "accounts",
)


def _table_exists(bind, name: str) -> bool:
    return sa.inspect(bind).has_table(name)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "accounts"):
        op.create_table(
            "accounts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("institution", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "transactions"):
        op.create_table(
            "transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("merchant", sa.String(length=300), nullable=False),
            sa.Column("merchant_normalized", sa.String(length=200), nullable=True),
            sa.Column("category", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        )
        op.create_index("ix_transactions_account_date", "transactions", ["account_id", "date"])

    if not _table_exists(bind, "receipts"):
        op.create_table(
            "receipts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("transaction_id", sa.String(length=36), nullable=True),
            sa.Column("merchant", sa.String(length=300), nullable=True),
            sa.Column("receipt_date", sa.Date(), nullable=True),
            sa.Column("expected_amount", sa.Float(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="SET NULL"),
        )
        op.create_index("ix_receipts_transaction_id", "receipts", ["transaction_id"])

    if not _table_exists(bind, "subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=False),
            sa.Column("merchant", sa.String(length=200), nullable=False),
            sa.Column("amount", sa.Float(), nullable=True),
            sa.Column("frequency", sa.String(length=20), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("user_acknowledged", sa.Boolean(), nullable=False),
            sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
            sa.Column("first_seen_date", sa.Date(), nullable=True),
            sa.Column("last_transaction_date", sa.Date(), nullable=True),
            sa.Column("detected_at", sa.DateTime(), nullable=False),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_monthly_amount", sa.Float(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("account_id", "merchant", name="uq_subscriptions_account_merchant"),
        )
        op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    if not _table_exists(bind, "alerts"):
        op.create_table(
            "alerts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("alert_type", sa.String(length=40), nullable=False),
            sa.Column("dedup_key", sa.String(length=200), nullable=False),
            sa.Column("subscription_id", sa.String(length=36), nullable=True),
            sa.Column("transaction_id", sa.String(length=36), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("condition_fingerprint", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("last_detected_at", sa.DateTime(), nullable=True),
            sa.Column("dismissed_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("dedup_key", name="uq_alerts_dedup_key"),
        )
        op.create_index("ix_alerts_status", "alerts", ["status"])
        op.create_index("ix_alerts_subscription_id", "alerts", ["subscription_id"])

    if not _table_exists(bind, "merchant_subscription_cache"):
        op.create_table(
            "merchant_subscription_cache",
            sa.Column("merchant", sa.String(length=200), nullable=False),
            sa.Column("classification", sa.String(length=20), nullable=False),
            sa.Column("confidence", sa.Float(), nullable=False),
            sa.Column("source", sa.String(length=20), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("merchant"),
        )

    if not _table_exists(bind, "detection_settings"):
        op.create_table(
            "detection_settings",
            sa.Column("key", sa.String(length=40), nullable=False),
            sa.Column("overrides_json", sa.JSON(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("key"),
        )

    if not _table_exists(bind, "detection_runs"):
        op.create_table(
            "detection_runs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("account_id", sa.String(length=36), nullable=True),
            sa.Column("kinds", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("counts_json", sa.JSON(), nullable=True),
            sa.Column("failures_json", sa.JSON(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=False),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_detection_runs_started_at", "detection_runs", ["started_at"])

    if not _table_exists(bind, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor", sa.String(length=40), nullable=False),
            sa.Column("reason", sa.String(length=200), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("before_state", sa.JSON(), nullable=True),
            sa.Column("after_state", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    bind = op.get_bind()

    for name in TABLES_IN_DROP_ORDER:
        if _table_exists(bind, name):
            op.drop_table(name)
