"""
Profile Store
=============

SQL persistence of the per-user ``SubscriptionRecord``.

Writes are whole-record upserts (the reconciler is the single writer and
already applied precedence); every change of status or expiry also
appends an ``EntitlementHistory`` row. Reads go through a short-lived Redis
copy that is invalidated on write. The copy never holds the raw receipt, so
records carrying one are always read from the table.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PersistenceFailure
from app.models.subscription import (
    EntitlementEventType,
    EntitlementHistory,
    EntitlementStatus,
    RecordSource,
    SubscriptionRecordRow,
)
from app.schemas.subscription import SubscriptionRecord, as_utc
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    EntitlementStatus.ACTIVE: EntitlementEventType.VERIFIED,
    EntitlementStatus.NONE: EntitlementEventType.REJECTED,
    EntitlementStatus.PENDING_VERIFICATION: EntitlementEventType.PENDING,
    EntitlementStatus.GRACE_PERIOD: EntitlementEventType.GRACE_STARTED,
    EntitlementStatus.EXPIRED: EntitlementEventType.EXPIRED,
}


def infer_event_type(
    previous: Optional[EntitlementStatus],
    record: SubscriptionRecord,
) -> EntitlementEventType:
    """History event type for a write that moved ``previous`` to ``record``."""
    if record.source == RecordSource.BACKEND and record.status != EntitlementStatus.NONE:
        if previous == EntitlementStatus.GRACE_PERIOD and record.status == EntitlementStatus.ACTIVE:
            return EntitlementEventType.RESTORED
        if record.status == EntitlementStatus.ACTIVE:
            return EntitlementEventType.VERIFIED
    return _STATUS_EVENTS[record.status]


def record_from_row(row: SubscriptionRecordRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        status=row.status,
        product_id=row.product_id,
        expires_at=as_utc(row.expires_at),
        source=row.source,
        last_verified_at=as_utc(row.last_verified_at),
        raw_receipt=row.raw_receipt,
    )


class SqlProfileStore:
    """Profile Store over the ``subscription_records`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_row(self, user_id: str) -> Optional[SubscriptionRecordRow]:
        stmt = select(SubscriptionRecordRow).where(SubscriptionRecordRow.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_subscription_record(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Return the stored record, or None for a user never persisted."""
        cached = await CacheManager.get(CacheKeys.subscription_record(user_id))
        # Receipts never go to Redis; a record holding one is read from the table
        if isinstance(cached, dict) and not cached.get("hasReceipt", True):
            try:
                return SubscriptionRecord.model_validate(cached.get("record"))
            except PydanticValidationError:
                logger.warning("Discarding malformed cached record for user=%s", user_id)

        try:
            row = await self._get_row(user_id)
        except SQLAlchemyError as e:
            logger.error("Profile store read failed for user=%s: %s", user_id, e)
            raise PersistenceFailure("profile store read failed") from e

        if row is None:
            return None

        record = record_from_row(row)
        await CacheManager.set(
            CacheKeys.subscription_record(user_id),
            {
                "record": record.to_public_dict(),
                "hasReceipt": record.raw_receipt is not None,
            },
            ttl=CacheManager.TTL_MINUTE,
        )
        return record

    async def put_subscription_record(
        self,
        user_id: str,
        record: SubscriptionRecord,
        *,
        event_type: Optional[EntitlementEventType] = None,
        event_data: Optional[dict[str, Any]] = None,
    ) -> SubscriptionRecord:
        """
        Upsert ``record`` for ``user_id``. The caller commits.

        Raises:
            ValueError: record belongs to another user.
            PersistenceFailure: database error.
        """
        if record.user_id != user_id:
            raise ValueError("record.user_id does not match the target user")

        try:
            row = await self._get_row(user_id)
            previous_status = row.status if row is not None else None
            previous_expires = as_utc(row.expires_at) if row is not None else None

            if row is None:
                row = SubscriptionRecordRow(user_id=user_id)
                self.db.add(row)

            row.status = record.status
            row.product_id = record.product_id
            row.expires_at = record.expires_at
            row.source = record.source
            row.last_verified_at = record.last_verified_at
            row.raw_receipt = record.raw_receipt

            if previous_status != record.status or previous_expires != record.expires_at:
                self.db.add(EntitlementHistory(
                    user_id=user_id,
                    event_type=event_type or infer_event_type(previous_status, record),
                    previous_status=previous_status.value if previous_status else None,
                    new_status=record.status.value,
                    previous_expires_at=previous_expires,
                    new_expires_at=record.expires_at,
                    source=record.source.value,
                    product_id=record.product_id,
                    event_data=event_data,
                ))

            await self.db.flush()
        except SQLAlchemyError as e:
            logger.error("Profile store write failed for user=%s: %s", user_id, e)
            raise PersistenceFailure("profile store write failed") from e

        await CacheInvalidator.on_subscription_change(user_id)

        logger.info(
            "Subscription record stored: user=%s status=%s source=%s",
            user_id,
            record.status.value,
            record.source.value,
        )
        return record
