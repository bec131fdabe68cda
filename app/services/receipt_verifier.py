"""
Entitlement Verifier
====================

Turns an opaque store receipt into a trustworthy ``SubscriptionRecord``
or fails with one of the ``VerificationError`` subclasses.

Handles:
- Input validation (empty/malformed receipts fail without a network call)
- Bounded backend calls (``asyncio.wait_for`` around every attempt)
- Retry with exponential backoff on ``TransientVerificationFailure`` only
- In-flight de-duplication: one pending verification per receipt; a second
  caller for the same receipt attaches to the pending outcome

The verifier never writes to the Profile Store; the reconciler is the
single writer.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.core.errors import (
    MalformedReceipt,
    ReceiptRejected,
    TransientVerificationFailure,
)
from app.models.subscription import EntitlementStatus, RecordSource
from app.schemas.subscription import ReceiptValidation, SubscriptionRecord
from app.services.clock import TrustedClock
from app.services.entitlement_backend import EntitlementBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base * factor**n`` seconds before retry n+1."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 4.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.VERIFY_MAX_ATTEMPTS,
            base_delay=settings.VERIFY_BACKOFF_BASE_SECONDS,
            factor=settings.VERIFY_BACKOFF_FACTOR,
        )

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.base_delay * (self.factor ** (attempt - 1))


def receipt_key(receipt: str) -> str:
    """Key of the pending-request table (receipts are never logged)."""
    return hashlib.sha256(receipt.encode("utf-8")).hexdigest()


def record_from_validation(
    user_id: str,
    validation: ReceiptValidation,
    now: datetime,
    *,
    receipt: Optional[str] = None,
    product_id: Optional[str] = None,
) -> SubscriptionRecord:
    """
    Backend-sourced record for a positive validation, verified at ``now``.

    ``active`` while the expiry is ahead of ``now``, ``expired`` otherwise.
    The caller checks ``valid`` and ``expires_at`` first.
    """
    status = (
        EntitlementStatus.ACTIVE
        if validation.expires_at > now
        else EntitlementStatus.EXPIRED
    )
    return SubscriptionRecord(
        user_id=user_id,
        status=status,
        product_id=validation.product_id or product_id,
        expires_at=validation.expires_at,
        source=RecordSource.BACKEND,
        last_verified_at=now,
        raw_receipt=receipt,
    )


class EntitlementVerifier:
    """Receipt verification with retries and per-receipt de-duplication."""

    def __init__(
        self,
        backend: EntitlementBackend,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[TrustedClock] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock or TrustedClock()
        self.timeout = timeout if timeout is not None else settings.VERIFY_TIMEOUT_SECONDS
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Future] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def verify(
        self,
        user_id: str,
        receipt: str,
        product_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Verify ``receipt`` for ``user_id``.

        Returns a backend-sourced record (``active`` when the expiry is in
        the future by the trusted clock, ``expired`` otherwise).

        Raises:
            MalformedReceipt: receipt empty or not a string.
            ReceiptRejected: backend definitively denied the receipt.
            TransientVerificationFailure: retries exhausted.
        """
        if not isinstance(receipt, str) or not receipt.strip():
            raise MalformedReceipt("receipt must be a non-empty string")

        key = receipt_key(receipt)
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug("Attaching to in-flight verification %s", key[:12])
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._in_flight[key] = future
        try:
            record = await self._verify_with_retry(user_id, receipt, product_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a future nobody attached to does not warn
            future.exception()
            raise
        else:
            future.set_result(record)
            return record
        finally:
            self._in_flight.pop(key, None)

    async def _verify_with_retry(
        self,
        user_id: str,
        receipt: str,
        product_id: Optional[str],
    ) -> SubscriptionRecord:
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                validation = await self._call_backend(receipt, product_id)
                return self._to_record(user_id, receipt, product_id, validation)
            except TransientVerificationFailure as exc:
                if attempt >= policy.max_attempts:
                    logger.warning(
                        "Verification failed after %d attempts for user=%s: %s",
                        attempt,
                        user_id,
                        exc.message,
                    )
                    raise TransientVerificationFailure(exc.message, attempts=attempt) from exc
                delay = policy.delay(attempt)
                logger.info(
                    "Transient verification failure for user=%s (attempt %d/%d), retrying in %.1fs",
                    user_id,
                    attempt,
                    policy.max_attempts,
                    delay,
                )
                await self._sleep(delay)

    async def _call_backend(
        self,
        receipt: str,
        product_id: Optional[str],
    ) -> ReceiptValidation:
        try:
            return await asyncio.wait_for(
                self.backend.verify_receipt(receipt, product_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientVerificationFailure(
                f"verification timed out after {self.timeout:.0f}s"
            ) from exc

    def _to_record(
        self,
        user_id: str,
        receipt: str,
        product_id: Optional[str],
        validation: ReceiptValidation,
    ) -> SubscriptionRecord:
        self.clock.observe_server_time(validation.server_time)

        if not validation.valid:
            logger.info("Receipt rejected for user=%s: %s", user_id, validation.reason)
            raise ReceiptRejected(validation.reason or "invalid")

        if validation.expires_at is None:
            # A valid answer without an expiry cannot grant a dated entitlement
            raise TransientVerificationFailure("verification response missing expiresAt")

        record = record_from_validation(
            user_id,
            validation,
            self.clock.now(),
            receipt=receipt,
            product_id=product_id,
        )
        logger.info(
            "Receipt verified: user=%s status=%s product=%s expires=%s",
            user_id,
            record.status.value,
            record.product_id,
            record.expires_at,
        )
        return record
