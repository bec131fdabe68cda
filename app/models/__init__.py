"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations.
"""

from app.models.subscription import (
    EntitlementEventType,
    EntitlementHistory,
    EntitlementStatus,
    RecordSource,
    SubscriptionRecordRow,
    SubscriptionTier,
)

__all__ = [
    "EntitlementEventType",
    "EntitlementHistory",
    "EntitlementStatus",
    "RecordSource",
    "SubscriptionRecordRow",
    "SubscriptionTier",
]
