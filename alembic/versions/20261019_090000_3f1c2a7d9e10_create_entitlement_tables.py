"""Create subscription_records and entitlement_history

Profile Store tables for the entitlement service: one subscription record
per user plus the audit trail of status/expiry changes.

Revision ID: 3f1c2a7d9e10
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f1c2a7d9e10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


entitlement_status = postgresql.ENUM(
    "none",
    "active",
    "grace_period",
    "expired",
    "pending_verification",
    name="entitlementstatus",
    create_type=False,
)
record_source = postgresql.ENUM(
    "store",
    "backend",
    "cache",
    name="recordsource",
    create_type=False,
)
entitlement_event_type = postgresql.ENUM(
    "verified",
    "rejected",
    "pending",
    "grace_started",
    "expired",
    "backend_update",
    "restored",
    name="entitlementeventtype",
    create_type=False,
)


def upgrade() -> None:
    # =========================================================================
    # Enum types
    # =========================================================================
    bind = op.get_bind()
    entitlement_status.create(bind, checkfirst=True)
    record_source.create(bind, checkfirst=True)
    entitlement_event_type.create(bind, checkfirst=True)

    # =========================================================================
    # subscription_records
    # =========================================================================
    op.create_table(
        "subscription_records",
        sa.Column("record_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("status", entitlement_status, nullable=False, server_default="none"),
        sa.Column("product_id", sa.String(length=100), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", record_source, nullable=False, server_default="cache"),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_receipt", sa.Text(), nullable=True),
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
    )
    op.create_index(
        "ix_subscription_records_user_id",
        "subscription_records",
        ["user_id"],
        unique=True,
    )
    op.create_index(
        "idx_subscription_record_status_expires",
        "subscription_records",
        ["status", "expires_at"],
    )

    # =========================================================================
    # entitlement_history
    # =========================================================================
    op.create_table(
        "entitlement_history",
        sa.Column("history_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", entitlement_event_type, nullable=False),
        sa.Column("previous_status", sa.String(length=50), nullable=True),
        sa.Column("new_status", sa.String(length=50), nullable=False),
        sa.Column("previous_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("new_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("product_id", sa.String(length=100), nullable=True),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_entitlement_history_user",
        "entitlement_history",
        ["user_id", "created_at"],
    )
    op.create_index(
        "idx_entitlement_history_event",
        "entitlement_history",
        ["event_type", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_entitlement_history_event", table_name="entitlement_history")
    op.drop_index("idx_entitlement_history_user", table_name="entitlement_history")
    op.drop_table("entitlement_history")

    op.drop_index("idx_subscription_record_status_expires", table_name="subscription_records")
    op.drop_index("ix_subscription_records_user_id", table_name="subscription_records")
    op.drop_table("subscription_records")

    bind = op.get_bind()
    entitlement_event_type.drop(bind, checkfirst=True)
    record_source.drop(bind, checkfirst=True)
    entitlement_status.drop(bind, checkfirst=True)
