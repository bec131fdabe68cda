"""
Subscription Models
===================

SQLAlchemy models backing the Profile Store: one subscription record per
user plus an audit trail of entitlement changes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    String,
    Text,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class EntitlementStatus(str, Enum):
    """Subscription status values driven by the reconciler."""
    NONE = "none"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    PENDING_VERIFICATION = "pending_verification"


class RecordSource(str, Enum):
    """Provenance of a subscription record, used for conflict resolution."""
    STORE = "store"
    BACKEND = "backend"
    CACHE = "cache"


class SubscriptionTier(str, Enum):
    """Subscription tier levels, derived from the store product id."""
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class EntitlementEventType(str, Enum):
    """Types of entitlement events for history."""
    VERIFIED = "verified"
    REJECTED = "rejected"
    PENDING = "pending"
    GRACE_STARTED = "grace_started"
    EXPIRED = "expired"
    BACKEND_UPDATE = "backend_update"
    RESTORED = "restored"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class SubscriptionRecordRow(Base, TimestampMixin):
    """
    Persisted subscription record.

    Mirrors ``app.schemas.subscription.SubscriptionRecord`` field for field.
    Rows are overwritten as a whole by ``SqlProfileStore``.
    """

    __tablename__ = "subscription_records"

    record_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Opaque auth-backend user id
    user_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    status: Mapped[EntitlementStatus] = mapped_column(
        SQLEnum(
            EntitlementStatus,
            name="entitlementstatus",
            values_callable=_enum_values,
        ),
        default=EntitlementStatus.NONE,
        nullable=False,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # Null only for status "none"
    )
    source: Mapped[RecordSource] = mapped_column(
        SQLEnum(
            RecordSource,
            name="recordsource",
            values_callable=_enum_values,
        ),
        default=RecordSource.CACHE,
        nullable=False,
    )
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Opaque store token, kept only for re-verification
    raw_receipt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        Index("idx_subscription_record_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecordRow(user_id={self.user_id}, "
            f"status={self.status}, source={self.source})>"
        )


class EntitlementHistory(Base):
    """
    Entitlement history model.

    One row per persisted change of status or expiry.
    """

    __tablename__ = "entitlement_history"

    history_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    event_type: Mapped[EntitlementEventType] = mapped_column(
        SQLEnum(
            EntitlementEventType,
            name="entitlementeventtype",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    previous_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    new_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    previous_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    new_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )

    # Raw webhook / verification payload, when there was one
    event_data: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_entitlement_history_user", "user_id", "created_at"),
        Index("idx_entitlement_history_event", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EntitlementHistory(user_id={self.user_id}, event={self.event_type})>"
