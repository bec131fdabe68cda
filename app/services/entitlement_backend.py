"""
Entitlement Backend
===================

The narrow interface the verifier and reconciler depend on, and its two
implementations:

- ``HttpEntitlementBackend``: talks to this service's HTTP surface
  (``/api/v1/subscription/verify``, ``/subscriber`` and ``/record``).
  Used by remote callers (client SDKs, other services, integration tests).
- ``ServiceEntitlementBackend``: in-process composition of RevenueCat
  receipt validation and the SQL Profile Store. Used by the entitlement
  sessions this service hosts.

Error mapping (both implementations):
- transport errors, timeouts, 5xx, unparseable bodies -> TransientVerificationFailure
- ``valid: false`` -> returned as a ReceiptValidation; the verifier raises
  ReceiptRejected
- Profile Store read/write failures -> PersistenceFailure
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.errors import (
    ErrorCodes,
    MalformedReceipt,
    PersistenceFailure,
    TransientVerificationFailure,
)
from app.schemas.subscription import ReceiptValidation, SubscriptionRecord

if TYPE_CHECKING:
    from app.services.revenuecat import RevenueCatService

logger = logging.getLogger(__name__)


class EntitlementBackend(Protocol):
    """What the entitlement core needs from the outside world."""

    async def verify_receipt(
        self,
        receipt: str,
        product_id: Optional[str],
    ) -> ReceiptValidation:
        ...

    async def lookup_subscription(
        self,
        user_id: str,
    ) -> Optional[ReceiptValidation]:
        """What the billing backend holds for the user (restore purchases)."""
        ...

    async def get_subscription_record(
        self,
        user_id: str,
    ) -> Optional[SubscriptionRecord]:
        ...

    async def put_subscription_record(
        self,
        user_id: str,
        record: SubscriptionRecord,
    ) -> None:
        ...


# -------------------------------------------------------------------------
# HTTP implementation
# -------------------------------------------------------------------------

def _unwrap(response: httpx.Response) -> Any:
    """Return the ``data`` member of the ``{success, data}`` envelope."""
    body = response.json()
    if isinstance(body, dict) and "success" in body:
        return body.get("data")
    return body


class HttpEntitlementBackend:
    """Entitlement backend over this service's REST API."""

    VERIFY_PATH = "/api/v1/subscription/verify"
    RECORD_PATH = "/api/v1/subscription/record"
    SUBSCRIBER_PATH = "/api/v1/subscription/subscriber"

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout if timeout is not None else settings.VERIFY_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpEntitlementBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def verify_receipt(
        self,
        receipt: str,
        product_id: Optional[str],
    ) -> ReceiptValidation:
        try:
            response = await self._client.post(
                self.VERIFY_PATH,
                json={"receipt": receipt, "productId": product_id},
            )
        except httpx.TimeoutException as e:
            raise TransientVerificationFailure("verification request timed out") from e
        except httpx.HTTPError as e:
            raise TransientVerificationFailure(f"verification transport error: {e}") from e

        if response.status_code >= 500:
            raise TransientVerificationFailure(
                f"verification endpoint returned {response.status_code}"
            )

        if response.status_code in (400, 422):
            error: dict = {}
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                error = body["error"]
            if error.get("code") in (ErrorCodes.SUB_MALFORMED_RECEIPT, ErrorCodes.VALIDATION_ERROR):
                raise MalformedReceipt(error.get("message", "malformed receipt"))

        if response.status_code != 200:
            # Auth problems, throttling and the like say nothing about the receipt
            raise TransientVerificationFailure(
                f"verification endpoint returned {response.status_code}"
            )

        try:
            return ReceiptValidation.model_validate(_unwrap(response))
        except (ValueError, PydanticValidationError) as e:
            raise TransientVerificationFailure("unparseable verification response") from e

    async def lookup_subscription(
        self,
        user_id: str,
    ) -> Optional[ReceiptValidation]:
        try:
            response = await self._client.get(self.SUBSCRIBER_PATH)
        except httpx.HTTPError as e:
            raise TransientVerificationFailure(f"subscriber lookup failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise TransientVerificationFailure(
                f"subscriber endpoint returned {response.status_code}"
            )

        try:
            return ReceiptValidation.model_validate(_unwrap(response))
        except (ValueError, PydanticValidationError) as e:
            raise TransientVerificationFailure("unparseable subscriber response") from e

    async def get_subscription_record(
        self,
        user_id: str,
    ) -> Optional[SubscriptionRecord]:
        try:
            response = await self._client.get(self.RECORD_PATH)
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"profile store read failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise PersistenceFailure(f"profile store read returned {response.status_code}")

        try:
            data = _unwrap(response)
            if data is None:
                return None
            record = SubscriptionRecord.model_validate(data)
        except (ValueError, PydanticValidationError) as e:
            raise PersistenceFailure("unparseable profile store record") from e

        if record.user_id != user_id:
            raise PersistenceFailure("profile store returned another user's record")
        return record

    async def put_subscription_record(
        self,
        user_id: str,
        record: SubscriptionRecord,
    ) -> None:
        try:
            response = await self._client.put(
                self.RECORD_PATH,
                json=record.model_dump(mode="json", by_alias=True),
            )
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"profile store write failed: {e}") from e

        if response.status_code != 200:
            raise PersistenceFailure(f"profile store write returned {response.status_code}")


# -------------------------------------------------------------------------
# In-process implementation
# -------------------------------------------------------------------------

class ServiceEntitlementBackend:
    """
    Entitlement backend used inside this service, bound to one user.

    The user id doubles as the RevenueCat ``app_user_id`` the device SDK was
    configured with. A short-lived DB session is opened per Profile Store
    call because the reconciler holding this backend outlives any request.
    """

    def __init__(
        self,
        user_id: str,
        revenuecat: "RevenueCatService",
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.user_id = user_id
        self.revenuecat = revenuecat
        self.session_factory = session_factory

    async def verify_receipt(
        self,
        receipt: str,
        product_id: Optional[str],
    ) -> ReceiptValidation:
        return await self.revenuecat.validate_receipt(
            receipt,
            product_id,
            app_user_id=self.user_id,
        )

    async def lookup_subscription(
        self,
        user_id: str,
    ) -> Optional[ReceiptValidation]:
        subscriber = await self.revenuecat.get_subscriber(user_id)
        if subscriber is None:
            return None
        return self.revenuecat.evaluate_subscriber(
            subscriber,
            None,
            server_time=datetime.now(timezone.utc),
        )

    async def get_subscription_record(
        self,
        user_id: str,
    ) -> Optional[SubscriptionRecord]:
        from app.services.profile_store import SqlProfileStore

        try:
            async with self.session_factory() as db:
                return await SqlProfileStore(db).get_subscription_record(user_id)
        except SQLAlchemyError as e:
            logger.error("Profile store read failed for user=%s: %s", user_id, e)
            raise PersistenceFailure("profile store read failed") from e

    async def put_subscription_record(
        self,
        user_id: str,
        record: SubscriptionRecord,
    ) -> None:
        from app.services.profile_store import SqlProfileStore

        try:
            async with self.session_factory() as db:
                await SqlProfileStore(db).put_subscription_record(user_id, record)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Profile store write failed for user=%s: %s", user_id, e)
            raise PersistenceFailure("profile store write failed") from e
