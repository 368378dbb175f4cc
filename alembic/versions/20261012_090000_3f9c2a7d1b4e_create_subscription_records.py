"""Create subscription_records and subscription_history

Revision ID: 3f9c2a7d1b4e
Revises:
Create Date: 2026-10-12 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3f9c2a7d1b4e"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PLAN_VALUES = ("none", "monthly", "yearly", "lifetime")
STATUS_VALUES = ("free", "pending", "active", "canceled", "expired", "at_risk")
PLATFORM_VALUES = ("none", "stripe", "apple", "manual")


def upgrade() -> None:
    """Upgrade database schema."""

    plan_enum = sa.Enum(*PLAN_VALUES, name="plan")
    status_enum = sa.Enum(*STATUS_VALUES, name="subscriptionstatus")
    platform_enum = sa.Enum(*PLATFORM_VALUES, name="platform")

    op.create_table(
        "subscription_records",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("plan", plan_enum, nullable=False, server_default="none"),
        sa.Column("status", status_enum, nullable=False, server_default="free"),
        sa.Column("platform", platform_enum, nullable=False, server_default="none"),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("period_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint(
            "platform",
            "external_subscription_id",
            name="uq_subscription_records_platform_external_id",
        ),
    )
    op.create_index(
        "idx_subscription_records_status_period_end",
        "subscription_records",
        ["status", "period_end_at"],
    )

    op.create_table(
        "subscription_history",
        sa.Column("history_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=True),
        sa.Column("event_kind", sa.String(length=50), nullable=False),
        sa.Column("platform", sa.String(length=20), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("previous_status", sa.String(length=20), nullable=True),
        sa.Column("new_status", sa.String(length=20), nullable=False),
        sa.Column("previous_plan", sa.String(length=20), nullable=True),
        sa.Column("new_plan", sa.String(length=20), nullable=False),
        sa.Column("raw_payload_ref", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index(
        "ix_subscription_history_user_id",
        "subscription_history",
        ["user_id"],
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("ix_subscription_history_user_id", table_name="subscription_history")
    op.drop_table("subscription_history")
    op.drop_index(
        "idx_subscription_records_status_period_end",
        table_name="subscription_records",
    )
    op.drop_table("subscription_records")

    op.execute("DROP TYPE IF EXISTS platform")
    op.execute("DROP TYPE IF EXISTS subscriptionstatus")
    op.execute("DROP TYPE IF EXISTS plan")
