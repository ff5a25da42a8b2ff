"""presale payments schema

Revision ID: 3f1c9a2b7d10
Revises:
Create Date: 2026-10-19 09:12:03.114502

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a2b7d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String()),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "projects",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("developer_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("currency in ('USD','MXN')",
                           name="ck_projects_currency"),
    )
    op.create_table(
        "rounds",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("project_id", sa.String(64), sa.ForeignKey(
            "projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("goal_type", sa.String(), nullable=False),
        sa.Column("goal_value", sa.Numeric(18, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("slots_per_person", sa.Integer(), nullable=False),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rule", sa.String(), nullable=False),
        sa.Column("partial_threshold", sa.Numeric(5, 4), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("group_slots", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("goal_type in ('reservations','amount')",
                           name="ck_rounds_goal_type"),
        sa.CheckConstraint("goal_value >= 0", name="ck_rounds_goal_ge_0"),
        sa.CheckConstraint("rule in ('all_or_nothing','partial')",
                           name="ck_rounds_rule"),
        sa.CheckConstraint("partial_threshold >= 0 AND partial_threshold <= 1",
                           name="ck_rounds_partial_threshold"),
        sa.CheckConstraint(
            "status in ('open','nearly_full','closed','not_met','fulfilled')", name="ck_rounds_status"),
    )
    op.create_index("idx_rounds_deadline", "rounds", ["deadline_at"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("round_id", sa.String(64), sa.ForeignKey(
            "rounds.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("slots", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("tx_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("slots >= 1", name="ck_reservations_slots_ge_1"),
        sa.CheckConstraint("amount >= 0", name="ck_reservations_amount_ge_0"),
        sa.CheckConstraint(
            "status in ('pending','confirmed','waitlisted','assigned','refunded')", name="ck_reservations_status"),
    )
    op.create_index("idx_reservations_round", "reservations", ["round_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("reservation_id", sa.String(64), sa.ForeignKey(
            "reservations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("external_id", sa.String()),
        sa.Column("metadata", sa.JSON()),
        sa.Column("raw_response", sa.JSON()),
        sa.Column("client_secret", sa.Text()),
        sa.Column("payout_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_ge_0"),
        sa.CheckConstraint(
            "status in ('pending','succeeded','refunded')", name="ck_transactions_status"),
    )
    op.create_index("idx_transactions_reservation",
                    "transactions", ["reservation_id"])
    op.create_index("idx_transactions_status", "transactions", ["status"])

    op.create_table(
        "payment_webhooks",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("reservation_id", sa.String(64)),
        sa.Column("transaction_id", sa.String(64)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(), nullable=False),
        sa.CheckConstraint("status in ('pending','processed','ignored')",
                           name="ck_payment_webhooks_status"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(128)),
        sa.Column("request_id", sa.String(64)),
        sa.Column("ip", sa.String(64)),
        sa.Column("method", sa.String(8)),
        sa.Column("path", sa.String(512)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_type", sa.String(32)),
        sa.Column("target_id", sa.String(255)),
        sa.Column("outcome", sa.String(16)),
        sa.Column("status", sa.Integer()),
        sa.Column("extra", sa.JSON()),
        sa.Column("prev_hash", sa.String(128)),
        sa.Column("hash", sa.String(128)),
        sa.Column("signature", sa.String(128)),
        sa.Column("key_id", sa.String(16)),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome in ('success','failure')", name="ck_audit_outcome"),
    )


def downgrade():
    op.drop_table("audit_log")
    op.drop_table("payment_webhooks")
    op.drop_index("idx_transactions_status", table_name="transactions")
    op.drop_index("idx_transactions_reservation", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("idx_reservations_round", table_name="reservations")
    op.drop_table("reservations")
    op.drop_index("idx_rounds_deadline", table_name="rounds")
    op.drop_table("rounds")
    op.drop_table("projects")
    op.drop_table("users")
