"""
RevenueCat Service
==================

Integration with RevenueCat, the billing backend behind the device store
receipts.

Handles:
- Subscriber info fetching via REST API
- Receipt validation (POST /receipts) for the verification endpoint
- Webhook authorization
- Mapping webhook events to backend-sourced subscription records
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.config import settings
from app.core.errors import TransientVerificationFailure
from app.models.subscription import (
    EntitlementStatus,
    RecordSource,
    SubscriptionTier,
)
from app.schemas.subscription import (
    ReceiptValidation,
    RevenueCatEventType,
    RevenueCatWebhookEvent,
    SubscriptionRecord,
)

logger = logging.getLogger(__name__)

ANONYMOUS_PREFIX = "$RCAnonymousID"

# Events that leave the subscription paid through ``expiration_at_ms``
_PAID_EVENTS = frozenset({
    RevenueCatEventType.INITIAL_PURCHASE.value,
    RevenueCatEventType.RENEWAL.value,
    RevenueCatEventType.UNCANCELLATION.value,
    RevenueCatEventType.PRODUCT_CHANGE.value,
    RevenueCatEventType.NON_RENEWING_PURCHASE.value,
    # Cancellation only stops renewal; access runs until expiry
    RevenueCatEventType.CANCELLATION.value,
})

# Statuses RevenueCat answers when the store refused the receipt itself
_RECEIPT_ERROR_STATUSES = frozenset({400, 422})


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a RevenueCat ISO-8601 date (``2026-01-01T00:00:00Z``)."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RevenueCatService:
    """Service for RevenueCat operations."""

    BASE_URL = "https://api.revenuecat.com/v1"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.REVENUECAT_API_KEY
        self.webhook_secret = settings.REVENUECAT_WEBHOOK_SECRET
        self.entitlement_id = settings.REVENUECAT_ENTITLEMENT_ID
        self._client = client

    # -------------------------------------------------------------------------
    # RevenueCat REST API
    # -------------------------------------------------------------------------

    def _get_headers(self, platform: Optional[str] = None) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if platform:
            headers["X-Platform"] = platform
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, mapping transport problems to transient failures."""
        try:
            if self._client is not None:
                return await self._client.request(
                    method, f"{self.BASE_URL}{path}", timeout=10.0, **kwargs
                )
            async with httpx.AsyncClient() as client:
                return await client.request(
                    method, f"{self.BASE_URL}{path}", timeout=10.0, **kwargs
                )
        except httpx.TimeoutException as e:
            logger.error("RevenueCat API timeout: %s %s", method, path)
            raise TransientVerificationFailure("RevenueCat request timed out") from e
        except httpx.HTTPError as e:
            logger.error("RevenueCat API error: %s %s: %s", method, path, e)
            raise TransientVerificationFailure(f"RevenueCat transport error: {e}") from e

    async def get_subscriber(self, subscriber_id: str) -> Optional[dict]:
        """
        Fetch subscriber information from RevenueCat.

        Args:
            subscriber_id: RevenueCat subscriber ID (our user_id).

        Returns:
            Subscriber data dict, or None when RevenueCat does not know it.

        Raises:
            TransientVerificationFailure: timeout, transport error or 5xx.
        """
        if not self.api_key:
            raise TransientVerificationFailure("RevenueCat API key not configured")

        response = await self._request(
            "GET",
            f"/subscribers/{subscriber_id}",
            headers=self._get_headers(),
        )

        if response.status_code == 200:
            return response.json().get("subscriber")
        if response.status_code == 404:
            return None

        logger.error(
            "RevenueCat API returned status %d for subscriber %s: %s",
            response.status_code,
            subscriber_id,
            response.text[:200],
        )
        raise TransientVerificationFailure(
            f"RevenueCat returned {response.status_code}"
        )

    async def validate_receipt(
        self,
        receipt: str,
        product_id: Optional[str],
        app_user_id: Optional[str] = None,
        platform: str = "ios",
    ) -> ReceiptValidation:
        """
        Validate a store receipt with RevenueCat.

        The receipt is posted as ``fetch_token``; RevenueCat validates it
        with the store and answers with the resulting subscriber.

        Returns:
            ``ReceiptValidation``; ``valid=False`` with a ``reason`` when the
            store or RevenueCat definitively refuse the receipt.

        Raises:
            TransientVerificationFailure: RevenueCat unreachable, 5xx, or any
                answer other than 200/400/422 (bad API key, throttling...).
        """
        if not self.api_key:
            raise TransientVerificationFailure("RevenueCat API key not configured")

        body: dict[str, Any] = {
            "app_user_id": app_user_id,
            "fetch_token": receipt,
        }
        if product_id:
            body["product_id"] = product_id

        response = await self._request(
            "POST",
            "/receipts",
            headers=self._get_headers(platform),
            json=body,
        )
        server_time = datetime.now(timezone.utc)

        if response.status_code in _RECEIPT_ERROR_STATUSES:
            reason = "invalid_receipt"
            try:
                payload = response.json()
                if isinstance(payload, dict) and payload.get("message"):
                    reason = str(payload["message"])
            except ValueError:
                pass
            logger.info(
                "RevenueCat rejected receipt for user=%s: %d %s",
                app_user_id,
                response.status_code,
                reason,
            )
            return ReceiptValidation(valid=False, reason=reason, server_time=server_time)

        if response.status_code != 200:
            # Credentials, throttling, outages: nothing is known about the receipt
            logger.error("RevenueCat receipt validation returned %d", response.status_code)
            raise TransientVerificationFailure(
                f"RevenueCat returned {response.status_code}"
            )

        try:
            subscriber = response.json().get("subscriber") or {}
        except ValueError as e:
            raise TransientVerificationFailure("unparseable RevenueCat response") from e

        return self.evaluate_subscriber(subscriber, product_id, server_time=server_time)

    def evaluate_subscriber(
        self,
        subscriber: dict,
        product_id: Optional[str],
        server_time: Optional[datetime] = None,
    ) -> ReceiptValidation:
        """
        Reduce a RevenueCat subscriber object to a validation result.

        The configured entitlement (``subscriber.entitlements[<id>]``)
        decides when the subscriber has entitlements at all; a subscriber
        holding only other entitlements is refused. Without an
        ``entitlements`` object the subscriptions are used directly:
        ``product_id`` if present, else the one with the latest expiry.
        """
        subscriptions: dict[str, dict] = subscriber.get("subscriptions") or {}
        entitlements: dict[str, dict] = subscriber.get("entitlements") or {}

        if entitlements:
            entitlement = entitlements.get(self.entitlement_id)
            if entitlement is None:
                return ReceiptValidation(
                    valid=False,
                    reason="entitlement_not_granted",
                    server_time=server_time,
                )
            granted_product = entitlement.get("product_identifier")
            # The entitlement's own expiry wins over the product's
            info = {
                **subscriptions.get(granted_product, {}),
                "expires_date": entitlement.get("expires_date"),
            }
            return self._evaluate_subscription(granted_product, info, server_time)

        selected_product = None
        if product_id and product_id in subscriptions:
            selected_product = product_id
        else:
            latest = None
            for pid, info in subscriptions.items():
                expires = _parse_date(info.get("expires_date"))
                if expires is not None and (latest is None or expires > latest):
                    latest = expires
                    selected_product = pid

        if selected_product is None:
            return ReceiptValidation(
                valid=False,
                reason="no_subscription",
                server_time=server_time,
            )

        return self._evaluate_subscription(
            selected_product,
            subscriptions[selected_product],
            server_time,
        )

    @staticmethod
    def _evaluate_subscription(
        product_id: Optional[str],
        info: dict,
        server_time: Optional[datetime],
    ) -> ReceiptValidation:
        if info.get("refunded_at"):
            return ReceiptValidation(
                valid=False,
                product_id=product_id,
                reason="refunded",
                server_time=server_time,
            )

        expires_at = _parse_date(info.get("expires_date"))
        if expires_at is None:
            return ReceiptValidation(
                valid=False,
                product_id=product_id,
                reason="not_a_subscription",
                server_time=server_time,
            )

        # A past expiry is still a valid receipt; the verifier marks it expired
        return ReceiptValidation(
            valid=True,
            expires_at=expires_at,
            product_id=product_id,
            server_time=server_time,
        )

    # -------------------------------------------------------------------------
    # Webhook Authentication
    # -------------------------------------------------------------------------

    def verify_webhook_authorization(self, authorization_header: Optional[str]) -> bool:
        """
        Verify RevenueCat webhook authorization header.

        RevenueCat sends the configured authorization token in the
        ``Authorization`` header of each webhook request.
        """
        if not self.webhook_secret:
            logger.warning("REVENUECAT_WEBHOOK_SECRET not configured")
            return False
        if not authorization_header:
            return False

        token = authorization_header
        if token.lower().startswith("bearer "):
            token = token[7:]
        return token == self.webhook_secret

    # -------------------------------------------------------------------------
    # Product → Tier Mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def map_tier_from_product(product_id: Optional[str]) -> SubscriptionTier:
        """Map store product ID (``com.steadysteps.annual``...) to a tier."""
        if not product_id:
            return SubscriptionTier.FREE

        pid = product_id.lower()
        if "annual" in pid or "yearly" in pid:
            return SubscriptionTier.ANNUAL
        elif "monthly" in pid:
            return SubscriptionTier.MONTHLY
        return SubscriptionTier.FREE

    # -------------------------------------------------------------------------
    # Webhook Event Mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def resolve_user_id(event: RevenueCatWebhookEvent) -> Optional[str]:
        """
        Our user id for a webhook event.

        The SDK is configured with ``appUserID = user id``, so
        ``app_user_id`` normally is ours; anonymous ids fall back to the
        original id or the first non-anonymous alias.
        """
        candidates = [event.app_user_id, event.original_app_user_id, *event.aliases]
        for candidate in candidates:
            if candidate and not candidate.startswith(ANONYMOUS_PREFIX):
                return candidate
        return None

    def record_from_webhook_event(
        self,
        event: RevenueCatWebhookEvent,
        user_id: str,
        current: Optional[SubscriptionRecord] = None,
    ) -> Optional[SubscriptionRecord]:
        """
        Map a webhook event to a backend-sourced record for ``user_id``.

        Returns None for events that carry no entitlement change
        (SUBSCRIBER_ALIAS, TRANSFER, unknown types) or that lack the data to
        build a dated record.
        """
        if event.entitlement_ids and self.entitlement_id not in event.entitlement_ids:
            logger.info(
                "Webhook %s for user=%s does not touch entitlement '%s'",
                event.type,
                user_id,
                self.entitlement_id,
            )
            return None

        verified_at = _from_ms(event.event_timestamp_ms) or datetime.now(timezone.utc)
        expires_at = _from_ms(event.expiration_at_ms) or (current.expires_at if current else None)
        product_id = event.product_id or (current.product_id if current else None)

        if event.type in _PAID_EVENTS:
            if event.type == RevenueCatEventType.PRODUCT_CHANGE.value and event.new_product_id:
                product_id = event.new_product_id
            if expires_at is None:
                logger.warning(
                    "Webhook %s for user=%s has no expiration, ignoring",
                    event.type,
                    user_id,
                )
                return None
            status = (
                EntitlementStatus.ACTIVE
                if expires_at > verified_at
                else EntitlementStatus.EXPIRED
            )
        elif event.type == RevenueCatEventType.EXPIRATION.value:
            status = EntitlementStatus.EXPIRED
            expires_at = expires_at or verified_at
        elif event.type == RevenueCatEventType.BILLING_ISSUE.value:
            if expires_at is None:
                logger.warning("Webhook BILLING_ISSUE for user=%s has no expiration", user_id)
                return None
            status = EntitlementStatus.GRACE_PERIOD
        else:
            logger.info("Webhook %s (no-op): user=%s", event.type, user_id)
            return None

        record = SubscriptionRecord(
            user_id=user_id,
            status=status,
            product_id=product_id,
            expires_at=expires_at,
            source=RecordSource.BACKEND,
            last_verified_at=verified_at,
            raw_receipt=current.raw_receipt if current else None,
        )
        logger.info(
            "Webhook %s: user=%s status=%s product=%s expires=%s",
            event.type,
            user_id,
            status.value,
            product_id,
            expires_at,
        )
        return record
