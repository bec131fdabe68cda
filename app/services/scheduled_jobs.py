"""
Scheduled Jobs
==============

Background sweeps over persisted subscription records:
- ``active`` records past their expiry move to ``grace_period``
- ``grace_period`` records past the grace window move to ``expired``
- ``grace_period`` records are re-checked against RevenueCat

Users with a live entitlement session in this process are skipped; their
reconciler runs its own expiry timer and is the single writer of their
record. The ``run_*`` functions are the entry points for an external
scheduler (cron, a worker); this service does not schedule them itself.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import TransientVerificationFailure
from app.models.subscription import (
    EntitlementEventType,
    EntitlementHistory,
    EntitlementStatus,
    RecordSource,
    SubscriptionRecordRow,
)
from app.services.cache import CacheInvalidator
from app.services.entitlement_sessions import live_user_ids
from app.services.revenuecat import RevenueCatService

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        db: AsyncSession,
        grace_period: Optional[timedelta] = None,
        exclude_user_ids: Iterable[str] = (),
    ):
        self.db = db
        self.grace_period = grace_period or timedelta(
            seconds=settings.ENTITLEMENT_GRACE_PERIOD_SECONDS
        )
        self.exclude_user_ids = frozenset(exclude_user_ids)

    def _select(self, *conditions):
        stmt = select(SubscriptionRecordRow).where(*conditions)
        if self.exclude_user_ids:
            stmt = stmt.where(SubscriptionRecordRow.user_id.not_in(self.exclude_user_ids))
        return stmt

    def _add_history(
        self,
        row: SubscriptionRecordRow,
        previous_status: EntitlementStatus,
        event_type: EntitlementEventType,
        event_data: Optional[dict] = None,
        previous_expires_at: Optional[datetime] = None,
    ) -> None:
        self.db.add(EntitlementHistory(
            user_id=row.user_id,
            event_type=event_type,
            previous_status=previous_status.value,
            new_status=row.status.value,
            previous_expires_at=previous_expires_at or row.expires_at,
            new_expires_at=row.expires_at,
            source=row.source.value,
            product_id=row.product_id,
            event_data=event_data,
        ))

    async def start_grace_periods(self) -> dict:
        """
        Move ``active`` records past their expiry into ``grace_period``.

        Run every 15 minutes.
        """
        now = datetime.now(timezone.utc)

        stmt = self._select(
            and_(
                SubscriptionRecordRow.status == EntitlementStatus.ACTIVE,
                SubscriptionRecordRow.expires_at <= now,
            )
        )
        result = await self.db.execute(stmt)
        rows = result.scalars().all()

        processed = 0
        expired = 0
        for row in rows:
            # Records that lapsed past the whole window skip grace entirely
            if row.expires_at + self.grace_period <= now:
                row.status = EntitlementStatus.EXPIRED
                self._add_history(row, EntitlementStatus.ACTIVE, EntitlementEventType.EXPIRED)
                expired += 1
            else:
                row.status = EntitlementStatus.GRACE_PERIOD
                self._add_history(row, EntitlementStatus.ACTIVE, EntitlementEventType.GRACE_STARTED)
                processed += 1
            await CacheInvalidator.on_subscription_change(row.user_id)

        await self.db.flush()

        logger.info("Grace period sweep: %d started, %d expired", processed, expired)
        return {
            "job": "start_grace_periods",
            "processed": processed,
            "expired": expired,
            "run_at": now.isoformat(),
        }

    async def expire_grace_periods(self) -> dict:
        """
        Move ``grace_period`` records past the grace window to ``expired``.

        Run every 15 minutes.
        """
        now = datetime.now(timezone.utc)
        cutoff = now - self.grace_period

        stmt = self._select(
            and_(
                SubscriptionRecordRow.status == EntitlementStatus.GRACE_PERIOD,
                SubscriptionRecordRow.expires_at <= cutoff,
            )
        )
        result = await self.db.execute(stmt)
        rows = result.scalars().all()

        for row in rows:
            row.status = EntitlementStatus.EXPIRED
            self._add_history(
                row,
                EntitlementStatus.GRACE_PERIOD,
                EntitlementEventType.EXPIRED,
                event_data={"reason": "grace_period_elapsed"},
            )
            await CacheInvalidator.on_subscription_change(row.user_id)

        await self.db.flush()

        logger.info("Grace expiry sweep: %d expired", len(rows))
        return {
            "job": "expire_grace_periods",
            "processed": len(rows),
            "run_at": now.isoformat(),
        }

    async def sync_grace_period_records(
        self,
        revenuecat: Optional[RevenueCatService] = None,
    ) -> dict:
        """
        Re-check ``grace_period`` records with RevenueCat; a renewal found
        there restores ``active`` with a fresh verification time.

        Run hourly.
        """
        revenuecat = revenuecat or RevenueCatService()
        now = datetime.now(timezone.utc)

        stmt = self._select(
            SubscriptionRecordRow.status == EntitlementStatus.GRACE_PERIOD
        )
        result = await self.db.execute(stmt)
        rows = result.scalars().all()

        restored = 0
        errors = []

        for row in rows:
            try:
                subscriber = await revenuecat.get_subscriber(row.user_id)
            except TransientVerificationFailure as e:
                errors.append({"user_id": row.user_id, "error": e.message})
                continue

            if not subscriber:
                continue

            validation = revenuecat.evaluate_subscriber(subscriber, row.product_id)
            if not validation.valid or validation.expires_at is None:
                continue
            if validation.expires_at <= now:
                continue

            previous_expires = row.expires_at
            row.status = EntitlementStatus.ACTIVE
            row.expires_at = validation.expires_at
            row.product_id = validation.product_id or row.product_id
            row.source = RecordSource.BACKEND
            row.last_verified_at = now
            self._add_history(
                row,
                EntitlementStatus.GRACE_PERIOD,
                EntitlementEventType.RESTORED,
                previous_expires_at=previous_expires,
            )
            await CacheInvalidator.on_subscription_change(row.user_id)
            restored += 1

        await self.db.flush()

        logger.info("RevenueCat grace sync: %d restored, %d errors", restored, len(errors))
        return {
            "job": "sync_grace_period_records",
            "restored": restored,
            "errors": errors,
            "run_at": now.isoformat(),
        }


# Job runner functions (can be called from scheduler like APScheduler or Celery)

async def run_grace_period_start(db: AsyncSession) -> dict:
    """Run the active -> grace_period sweep."""
    service = ScheduledJobService(db, exclude_user_ids=live_user_ids())
    return await service.start_grace_periods()


async def run_grace_period_expiry(db: AsyncSession) -> dict:
    """Run the grace_period -> expired sweep."""
    service = ScheduledJobService(db, exclude_user_ids=live_user_ids())
    return await service.expire_grace_periods()


async def run_revenuecat_grace_sync(db: AsyncSession) -> dict:
    """Run the RevenueCat re-check of grace-period records."""
    service = ScheduledJobService(db, exclude_user_ids=live_user_ids())
    return await service.sync_grace_period_records()
