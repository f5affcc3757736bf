"""create metering tables and change-notification triggers

Revision ID: 3b7e0c2a9d14
Revises:
Create Date: 2026-10-18 09:12:44.204511

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op
from metering.db.triggers import TRIGGERS, drop_trigger_sql, install_statements

# revision identifiers, used by Alembic.
revision: str = "3b7e0c2a9d14"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=255), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="free"),
        sa.Column("plan", sa.String(length=50), nullable=False, server_default="free"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)

    counters = [
        "basic_interactions",
        "premium_interactions",
        "memories_added",
        "memories_searched",
        "voice_chats",
        "videos_generated",
    ]
    op.create_table(
        "usage_counters",
        sa.Column("user_id", sa.String(length=255), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("month", sa.String(length=7), primary_key=True),
        *[sa.Column(name, sa.Integer(), nullable=False, server_default="0") for name in counters],
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("basic_interactions >= 0", name="ck_usage_basic_nonneg"),
        sa.CheckConstraint("premium_interactions >= 0", name="ck_usage_premium_nonneg"),
        sa.CheckConstraint("memories_added >= 0", name="ck_usage_mem_added_nonneg"),
        sa.CheckConstraint("memories_searched >= 0", name="ck_usage_mem_searched_nonneg"),
        sa.CheckConstraint("voice_chats >= 0", name="ck_usage_voice_nonneg"),
        sa.CheckConstraint("videos_generated >= 0", name="ck_usage_videos_nonneg"),
    )

    op.create_table(
        "stripe_webhook_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Per-user NOTIFY on subscription and usage writes
    for statement in install_statements():
        op.execute(statement)


def downgrade() -> None:
    """Downgrade schema."""
    for table in TRIGGERS:
        op.execute(drop_trigger_sql(table))
    op.execute("DROP FUNCTION IF EXISTS notify_user_table_change()")

    op.drop_table("stripe_webhook_events")
    op.drop_table("usage_counters")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_users_stripe_customer_id", table_name="users")
    op.drop_table("users")
