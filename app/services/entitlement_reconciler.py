"""
Entitlement Reconciler
======================

Single authority over one user's ``SubscriptionRecord``. Merges verifier
results, Profile Store reads and backend (webhook) updates into the current
record and answers "is the user entitled right now".

State machine over ``status``:

    none                  -> pending_verification   purchase completed / unconfirmed cached receipt
    pending_verification  -> active                 verification succeeded, expiry in the future
    pending_verification  -> none                   receipt rejected
    pending_verification  -> (previous)             transient failure after retries
    active                -> grace_period           expiry reached without re-verification
    grace_period          -> active                 fresh verification extends the expiry
    grace_period          -> expired                grace window elapsed
    any                   -> active/none/expired    newer backend-sourced record
    any                   -> active/expired         restore found a subscription

Concurrency:
    Every change goes through one ``asyncio.Lock``; candidates are applied by
    precedence (later ``last_verified_at`` wins, ties go to the backend), so
    the outcome does not depend on arrival order. ``is_entitled()`` and
    ``current_status()`` only read the already-reconciled record.

Persistence:
    Every transition is written to the Profile Store. A failed write leaves
    the in-memory record authoritative and is retried on the next trigger.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from app.config import settings
from app.core.errors import (
    EntitlementError,
    MalformedReceipt,
    PersistenceFailure,
    ReceiptRejected,
    TransientVerificationFailure,
    UserVisible,
)
from app.models.subscription import EntitlementStatus, RecordSource
from app.schemas.subscription import SubscriptionRecord
from app.services.clock import TrustedClock
from app.services.entitlement_backend import EntitlementBackend
from app.services.receipt_verifier import (
    EntitlementVerifier,
    receipt_key,
    record_from_validation,
)

logger = logging.getLogger(__name__)


class EntitlementNotice(str, Enum):
    """User-visible outcome of a failure."""

    PENDING = UserVisible.PENDING
    NOT_SUBSCRIBED = UserVisible.NOT_SUBSCRIBED


ChangeCallback = Callable[[SubscriptionRecord, SubscriptionRecord], Any]
NoticeCallback = Callable[[EntitlementNotice, Optional[EntitlementError]], Any]


class EntitlementReconciler:
    """Owns the authoritative subscription record of one user session."""

    def __init__(
        self,
        user_id: str,
        backend: EntitlementBackend,
        verifier: Optional[EntitlementVerifier] = None,
        *,
        clock: Optional[TrustedClock] = None,
        grace_period: Optional[timedelta] = None,
    ):
        self.user_id = user_id
        self.backend = backend
        self.clock = clock or (verifier.clock if verifier else TrustedClock())
        self.verifier = verifier or EntitlementVerifier(backend, clock=self.clock)
        self.grace_period = grace_period or timedelta(
            seconds=settings.ENTITLEMENT_GRACE_PERIOD_SECONDS
        )

        self._record = SubscriptionRecord.empty(user_id)
        self._lock = asyncio.Lock()
        self._dirty = False
        self._closed = False
        self._notice: Optional[EntitlementNotice] = None

        self._change_listeners: list[ChangeCallback] = []
        self._notice_listeners: list[NoticeCallback] = []

        self._expiry_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

        self._confirmed_receipts: set[str] = set()
        self._rejected_receipts: set[str] = set()

    # -------------------------------------------------------------------------
    # Feature gate
    # -------------------------------------------------------------------------

    @property
    def record(self) -> SubscriptionRecord:
        return self._record

    @property
    def notice(self) -> Optional[EntitlementNotice]:
        """
        Notice of the latest round (login, purchase, refresh, restore or
        grace re-verification), cleared by a successful verification.
        """
        return self._notice

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    def is_entitled(self) -> bool:
        """True for ``active`` and ``grace_period``. Never touches the network."""
        return self._record.is_entitled

    def current_status(self) -> EntitlementStatus:
        return self._record.status

    def on_entitlement_changed(self, callback: ChangeCallback) -> Callable[[], None]:
        """
        Register ``callback(previous, current)``, called when status or expiry
        changes. Returns a function that unregisters it.
        """
        self._change_listeners.append(callback)
        return lambda: self._discard(self._change_listeners, callback)

    def on_notice(self, callback: NoticeCallback) -> Callable[[], None]:
        """Register ``callback(notice, error)`` for user-visible failures."""
        self._notice_listeners.append(callback)
        return lambda: self._discard(self._notice_listeners, callback)

    @staticmethod
    def _discard(listeners: list, callback) -> None:
        if callback in listeners:
            listeners.remove(callback)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> SubscriptionRecord:
        """
        Load the persisted record on login.

        A user without a stored record gets a ``none`` record, persisted
        right away. A stored receipt not yet confirmed this session is
        re-verified in the background.
        """
        self._notice = None
        try:
            stored = await self.backend.get_subscription_record(self.user_id)
            loaded = True
        except PersistenceFailure as exc:
            logger.warning("Could not load subscription record for user=%s: %s", self.user_id, exc)
            self._emit_notice(EntitlementNotice.PENDING, exc)
            stored, loaded = None, False

        async with self._lock:
            if stored is not None:
                if stored.user_id != self.user_id:
                    raise ValueError("stored record belongs to another user")
                self._record = stored
            elif loaded:
                # First profile load: persist the initial record
                self._dirty = True
            await self._flush_quietly_locked()

        logger.info(
            "Entitlement session started: user=%s status=%s",
            self.user_id,
            self._record.status.value,
        )

        await self._check_expiry(reverify=False)

        receipt = self._record.raw_receipt
        if receipt and receipt_key(receipt) not in self._confirmed_receipts:
            self._spawn(self._reverify(receipt, self._record.product_id, new_round=False))

        return self._record

    async def close(self) -> None:
        """
        Logout: cancel the expiry timer and background verifications and
        drop the in-memory record. The persisted copy remains.
        """
        self._closed = True
        tasks = list(self._background)
        if self._expiry_task is not None:
            tasks.append(self._expiry_task)
            self._expiry_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._change_listeners.clear()
        self._notice_listeners.clear()
        self._record = SubscriptionRecord.empty(self.user_id)
        self._dirty = False
        logger.info("Entitlement session closed: user=%s", self.user_id)

    async def wait_for_background(self) -> None:
        """Wait for background verifications spawned so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self, candidate: SubscriptionRecord) -> SubscriptionRecord:
        """
        Apply ``candidate`` by precedence and persist the winner.

        Disagreements never raise; a losing candidate is a no-op.

        Raises:
            PersistenceFailure: the Profile Store write failed. The in-memory
                record stays authoritative and the write is retried on the
                next reconciliation.
        """
        if candidate.user_id != self.user_id:
            raise ValueError("candidate belongs to another user")

        async with self._lock:
            if self._accepts(candidate, self._record):
                self._replace_locked(self._evaluate_expiry(candidate))
            try:
                await self._flush_locked()
            finally:
                self._schedule_expiry()
            return self._record

    async def apply_backend_record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Backend-driven update (webhook reflected in the Profile Store)."""
        return await self._safe_reconcile(record)

    async def refresh(self) -> SubscriptionRecord:
        """
        Explicit refresh / app foreground: reconcile the Profile Store copy,
        then re-verify the held receipt. Never raises.
        """
        self._notice = None
        try:
            stored = await self.backend.get_subscription_record(self.user_id)
        except PersistenceFailure as exc:
            logger.warning("Refresh could not read record for user=%s: %s", self.user_id, exc)
            self._emit_notice(EntitlementNotice.PENDING, exc)
            stored = None

        if stored is not None:
            await self._safe_reconcile(stored)
        else:
            async with self._lock:
                await self._flush_quietly_locked()

        receipt = self._record.raw_receipt
        if receipt:
            await self._reverify(receipt, self._record.product_id, new_round=False)
        return self._record

    async def handle_purchase(
        self,
        receipt: str,
        product_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Purchase completed on the device. Verifies the receipt and applies
        the outcome. Never raises; failures surface as notices.
        """
        if not isinstance(receipt, str) or not receipt.strip():
            self._notice = None
            self._emit_notice(
                EntitlementNotice.NOT_SUBSCRIBED,
                MalformedReceipt("receipt must be a non-empty string"),
            )
            return self._record
        return await self._reverify(receipt, product_id)

    async def restore(self) -> SubscriptionRecord:
        """
        Restore purchases: reconcile what the billing backend holds for the
        user, without a device receipt. Never raises.

        Nothing found (or a refused subscription) leaves the current record
        alone and reports ``not_subscribed``; a webhook may still be on its
        way.
        """
        self._notice = None
        try:
            validation = await asyncio.wait_for(
                self.backend.lookup_subscription(self.user_id),
                timeout=self.verifier.timeout,
            )
        except asyncio.TimeoutError:
            self._emit_notice(
                EntitlementNotice.PENDING,
                TransientVerificationFailure("subscription lookup timed out"),
            )
            return self._record
        except TransientVerificationFailure as exc:
            logger.warning("Restore failed for user=%s: %s", self.user_id, exc.message)
            self._emit_notice(EntitlementNotice.PENDING, exc)
            return self._record

        if validation is not None:
            self.clock.observe_server_time(validation.server_time)
        if validation is None or not validation.valid or validation.expires_at is None:
            reason = validation.reason if validation is not None else "unknown subscriber"
            logger.info("Nothing to restore for user=%s: %s", self.user_id, reason)
            self._emit_notice(
                EntitlementNotice.NOT_SUBSCRIBED,
                ReceiptRejected(reason or "no subscription"),
            )
            return self._record

        restored = record_from_validation(
            self.user_id,
            validation,
            self.clock.now(),
            receipt=self._record.raw_receipt,
            product_id=self._record.product_id,
        )
        logger.info(
            "Restored subscription for user=%s: product=%s expires=%s",
            self.user_id,
            restored.product_id,
            restored.expires_at,
        )
        return await self._safe_reconcile(restored)

    async def check_expiry(self) -> SubscriptionRecord:
        """
        Timer body: move ``active`` past its expiry into ``grace_period`` and
        ``grace_period`` past the grace window into ``expired``.
        """
        return await self._check_expiry(reverify=True)

    async def _check_expiry(self, *, reverify: bool) -> SubscriptionRecord:
        async with self._lock:
            current = self._record
            updated = self._evaluate_expiry(current)
            if updated != current:
                self._replace_locked(updated)
                await self._flush_quietly_locked()
            self._schedule_expiry()

        entered_grace = (
            current.status == EntitlementStatus.ACTIVE
            and updated.status == EntitlementStatus.GRACE_PERIOD
        )
        if reverify and entered_grace and updated.raw_receipt and not self._closed:
            logger.info("Grace period started for user=%s, re-verifying", self.user_id)
            self._spawn(self._reverify(updated.raw_receipt, updated.product_id))
        return self._record

    # -------------------------------------------------------------------------
    # Verification flow
    # -------------------------------------------------------------------------

    async def _reverify(
        self,
        receipt: str,
        product_id: Optional[str],
        *,
        new_round: bool = True,
    ) -> SubscriptionRecord:
        key = receipt_key(receipt)
        if key in self._rejected_receipts:
            logger.info("Skipping previously rejected receipt for user=%s", self.user_id)
            self._emit_notice(EntitlementNotice.NOT_SUBSCRIBED, ReceiptRejected("previously rejected"))
            return self._record

        # One notice per verification round
        if new_round:
            self._notice = None

        previous = await self._enter_pending(receipt, product_id)

        try:
            verified = await self.verifier.verify(self.user_id, receipt, product_id)
        except MalformedReceipt as exc:
            await self._leave_pending(previous, keep_receipt=False)
            self._emit_notice(EntitlementNotice.NOT_SUBSCRIBED, exc)
        except ReceiptRejected as exc:
            self._rejected_receipts.add(key)
            rejected = SubscriptionRecord(
                user_id=self.user_id,
                status=EntitlementStatus.NONE,
                source=RecordSource.BACKEND,
                last_verified_at=self.clock.now(),
            )
            await self._safe_reconcile(rejected)
            self._emit_notice(EntitlementNotice.NOT_SUBSCRIBED, exc)
        except TransientVerificationFailure as exc:
            await self._leave_pending(previous, keep_receipt=True)
            self._emit_notice(EntitlementNotice.PENDING, exc)
        else:
            self._confirmed_receipts.add(key)
            self._notice = None
            await self._safe_reconcile(verified)

        return self._record

    async def _enter_pending(
        self,
        receipt: str,
        product_id: Optional[str],
    ) -> SubscriptionRecord:
        """``none`` -> ``pending_verification``; other statuses are kept."""
        async with self._lock:
            previous = self._record
            if previous.status == EntitlementStatus.NONE:
                self._replace_locked(previous.replace(
                    status=EntitlementStatus.PENDING_VERIFICATION,
                    product_id=product_id,
                    raw_receipt=receipt,
                    source=RecordSource.STORE,
                ))
                await self._flush_quietly_locked()
            return previous

    async def _leave_pending(self, previous: SubscriptionRecord, *, keep_receipt: bool) -> None:
        """Back to the pre-verification status, unless something newer landed."""
        async with self._lock:
            current = self._record
            if current.status != EntitlementStatus.PENDING_VERIFICATION:
                return
            changes: dict[str, Any] = {}
            if keep_receipt:
                # Retained so the next start/refresh can retry
                changes = {"raw_receipt": current.raw_receipt, "product_id": current.product_id}
            self._replace_locked(previous.replace(**changes) if changes else previous)
            await self._flush_quietly_locked()

    async def _safe_reconcile(self, candidate: SubscriptionRecord) -> SubscriptionRecord:
        try:
            return await self.reconcile(candidate)
        except PersistenceFailure as exc:
            logger.error("Subscription record not persisted for user=%s: %s", self.user_id, exc)
            self._emit_notice(EntitlementNotice.PENDING, exc)
            return self._record

    # -------------------------------------------------------------------------
    # Record helpers (call with the lock held)
    # -------------------------------------------------------------------------

    @staticmethod
    def _accepts(candidate: SubscriptionRecord, current: SubscriptionRecord) -> bool:
        if candidate == current:
            return False
        # Expired only reverts through a fresh verification, never a cached copy
        if current.status == EntitlementStatus.EXPIRED and candidate.source == RecordSource.CACHE:
            return False
        return candidate.supersedes(current)

    def _evaluate_expiry(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.expires_at is None:
            return record
        now = self.clock.now()
        grace_ends = record.expires_at + self.grace_period

        if record.status == EntitlementStatus.ACTIVE and now >= record.expires_at:
            if now >= grace_ends:
                return record.replace(status=EntitlementStatus.EXPIRED)
            return record.replace(status=EntitlementStatus.GRACE_PERIOD)
        if record.status == EntitlementStatus.GRACE_PERIOD and now >= grace_ends:
            return record.replace(status=EntitlementStatus.EXPIRED)
        return record

    def _replace_locked(self, record: SubscriptionRecord) -> None:
        previous = self._record
        if record == previous:
            return
        self._record = record
        self._dirty = True

        if not previous.same_entitlement(record):
            logger.info(
                "Entitlement changed: user=%s %s -> %s (source=%s, expires=%s)",
                self.user_id,
                previous.status.value,
                record.status.value,
                record.source.value,
                record.expires_at,
            )
            self._notify_change(previous, record)

    async def _flush_locked(self) -> None:
        if not self._dirty:
            return
        record = self._record
        try:
            await self.backend.put_subscription_record(self.user_id, record)
        except PersistenceFailure:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"profile store write failed: {exc}") from exc
        if self._record is record:
            self._dirty = False

    async def _flush_quietly_locked(self) -> None:
        try:
            await self._flush_locked()
        except PersistenceFailure as exc:
            logger.error("Subscription record not persisted for user=%s: %s", self.user_id, exc)
            self._emit_notice(EntitlementNotice.PENDING, exc)

    # -------------------------------------------------------------------------
    # Expiry timer
    # -------------------------------------------------------------------------

    def _next_deadline(self):
        record = self._record
        if record.expires_at is None:
            return None
        if record.status == EntitlementStatus.ACTIVE:
            return record.expires_at
        if record.status == EntitlementStatus.GRACE_PERIOD:
            return record.expires_at + self.grace_period
        return None

    def _schedule_expiry(self) -> None:
        if self._expiry_task is not None:
            self._expiry_task.cancel()
            self._expiry_task = None
        if self._closed:
            return
        deadline = self._next_deadline()
        if deadline is None:
            return
        delay = max(0.0, (deadline - self.clock.now()).total_seconds())
        self._expiry_task = asyncio.create_task(self._expire_after(delay))

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach first so check_expiry's reschedule does not cancel this task
        self._expiry_task = None
        try:
            await self.check_expiry()
        except Exception:
            logger.exception("Scheduled expiry check failed for user=%s", self.user_id)

    @property
    def expiry_scheduled(self) -> bool:
        return self._expiry_task is not None and not self._expiry_task.done()

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def _notify_change(self, previous: SubscriptionRecord, current: SubscriptionRecord) -> None:
        for callback in list(self._change_listeners):
            self._invoke(callback, previous, current)

    def _emit_notice(self, notice: EntitlementNotice, error: Optional[EntitlementError]) -> None:
        if self._notice == notice:
            return
        self._notice = notice
        logger.info("Entitlement notice for user=%s: %s", self.user_id, notice.value)
        for callback in list(self._notice_listeners):
            self._invoke(callback, notice, error)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Entitlement listener failed for user=%s", self.user_id)
            return
        if inspect.isawaitable(result):
            self._spawn(self._guard(result))

    async def _guard(self, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Entitlement listener failed for user=%s", self.user_id)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
