"""
Subscription API Endpoints
==========================

Receipt verification, the Profile Store record, and the caller's live
entitlement session (login/logout, purchase events, refresh, restore,
status).

``/verify``, ``/subscriber`` and ``/record`` form the backend contract
used by ``HttpEntitlementBackend``; the session endpoints drive the
reconciler hosted by this service.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter

from app.config import settings
from app.core.errors import (
    ErrorCodes,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    TransientVerificationFailure,
    ValidationError,
)
from app.core.feature_limits import effective_tier, get_feature_limits
from app.dependencies import (
    CurrentUserId,
    DBSession,
    EntitlementSession,
    RevenueCat,
    SessionManager,
)
from app.schemas.subscription import (
    EntitlementStatusResponse,
    PurchaseEventRequest,
    SubscriptionRecord,
    SubscriptionRecordResponse,
    VerifyReceiptRequest,
)
from app.models.subscription import EntitlementStatus
from app.services.entitlement_reconciler import EntitlementReconciler
from app.services.profile_store import SqlProfileStore
from app.services.receipt_verifier import record_from_validation
from app.services.revenuecat import RevenueCatService

logger = logging.getLogger(__name__)

router = APIRouter()

# Reconcilers stamp verification times with a server-corrected clock
_CLOCK_TOLERANCE = timedelta(minutes=5)


def _status_data(session: EntitlementReconciler) -> dict:
    """Feature-gate view of a session; never touches the network."""
    tier = effective_tier(session).value
    data = session.record.to_public_dict()
    data.update({
        "isEntitled": session.is_entitled(),
        "tier": tier,
        "notice": session.notice.value if session.notice else None,
        "featureLimits": get_feature_limits(tier),
    })
    return data


# -------------------------------------------------------------------------
# Billing verification
# -------------------------------------------------------------------------

@router.post("/verify")
async def verify_receipt(
    request: VerifyReceiptRequest,
    user_id: CurrentUserId,
    revenuecat: RevenueCat,
):
    """
    Validate a store receipt for the caller.

    Returns ``{valid, expiresAt, productId, reason, serverTime}``;
    ``valid: false`` is a definitive rejection. Upstream outages answer 503
    so clients retry.
    """
    if not request.receipt.strip():
        raise ValidationError(
            message="Receipt must be a non-empty string",
            field="receipt",
            code=ErrorCodes.SUB_MALFORMED_RECEIPT,
        )

    try:
        validation = await revenuecat.validate_receipt(
            request.receipt,
            request.product_id,
            app_user_id=user_id,
        )
    except TransientVerificationFailure as e:
        logger.warning("Receipt verification unavailable for user=%s: %s", user_id, e.message)
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_VERIFICATION_PENDING,
            message="Subscription could not be confirmed right now",
        )

    if validation.server_time is None:
        validation = validation.model_copy(update={"server_time": datetime.now(timezone.utc)})

    logger.info(
        "Receipt verification for user=%s: valid=%s product=%s",
        user_id,
        validation.valid,
        validation.product_id,
    )
    return {
        "success": True,
        "data": validation.model_dump(mode="json", by_alias=True),
    }


# -------------------------------------------------------------------------
# Profile Store
# -------------------------------------------------------------------------

@router.get(
    "/record",
    response_model=SubscriptionRecordResponse,
)
async def get_subscription_record(
    user_id: CurrentUserId,
    db: DBSession,
):
    """Persisted subscription record of the caller (404 if never stored)."""
    record = await SqlProfileStore(db).get_subscription_record(user_id)
    if record is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_NO_RECORD,
            message="No subscription record stored",
        )
    return SubscriptionRecordResponse(
        success=True,
        data=record.model_dump(mode="json", by_alias=True),
    )


def _grants_more(record: SubscriptionRecord, stored: Optional[SubscriptionRecord]) -> bool:
    """True when writing ``record`` would extend what ``stored`` entitles."""
    if not record.is_entitled:
        return False
    if stored is None or not stored.is_entitled:
        return True
    if record.expires_at > stored.expires_at:
        return True
    return (
        record.status == EntitlementStatus.ACTIVE
        and stored.status == EntitlementStatus.GRACE_PERIOD
    )


async def _record_from_receipt(
    record: SubscriptionRecord,
    user_id: str,
    revenuecat: RevenueCatService,
    now: datetime,
) -> SubscriptionRecord:
    """Re-derive an entitled record from its receipt; the client's dates are ignored."""
    if not record.raw_receipt:
        raise ForbiddenError(
            code=ErrorCodes.SUB_NOT_VERIFIED,
            message="Entitlement requires a verifiable receipt",
        )

    try:
        validation = await revenuecat.validate_receipt(
            record.raw_receipt,
            record.product_id,
            app_user_id=user_id,
        )
    except TransientVerificationFailure as e:
        logger.warning("Record write could not be verified for user=%s: %s", user_id, e.message)
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_VERIFICATION_PENDING,
            message="Subscription could not be confirmed right now",
        )

    if not validation.valid or validation.expires_at is None:
        logger.warning("Refused unverified entitlement write for user=%s", user_id)
        raise ForbiddenError(
            code=ErrorCodes.SUB_NOT_VERIFIED,
            message="Receipt does not grant an entitlement",
            reason=validation.reason,
        )

    derived = record_from_validation(
        user_id,
        validation,
        now,
        receipt=record.raw_receipt,
        product_id=record.product_id,
    )
    grace_ends = derived.expires_at + timedelta(seconds=settings.ENTITLEMENT_GRACE_PERIOD_SECONDS)
    if derived.status == EntitlementStatus.EXPIRED and now < grace_ends:
        derived = derived.replace(status=EntitlementStatus.GRACE_PERIOD)
    return derived


@router.put(
    "/record",
    response_model=SubscriptionRecordResponse,
)
async def put_subscription_record(
    record: SubscriptionRecord,
    user_id: CurrentUserId,
    db: DBSession,
    revenuecat: RevenueCat,
):
    """
    Persist the caller's record (written by a remote reconciler).

    Entitlement is never taken on the caller's word: a record that would
    extend the stored entitlement is re-derived from its receipt through
    RevenueCat, and verification times ahead of the server are refused.
    """
    if record.user_id != user_id:
        raise ForbiddenError(
            code=ErrorCodes.SUB_USER_MISMATCH,
            message="Record belongs to another user",
        )

    now = datetime.now(timezone.utc)
    if record.last_verified_at is not None and record.last_verified_at > now + _CLOCK_TOLERANCE:
        raise ForbiddenError(
            code=ErrorCodes.SUB_NOT_VERIFIED,
            message="lastVerifiedAt is ahead of the server clock",
        )

    store = SqlProfileStore(db)
    if record.is_entitled and _grants_more(record, await store.get_subscription_record(user_id)):
        record = await _record_from_receipt(record, user_id, revenuecat, now)

    stored = await store.put_subscription_record(user_id, record)
    return SubscriptionRecordResponse(
        success=True,
        data=stored.model_dump(mode="json", by_alias=True),
    )


@router.get("/subscriber")
async def lookup_subscriber(
    user_id: CurrentUserId,
    revenuecat: RevenueCat,
):
    """
    What RevenueCat holds for the caller, in the ``/verify`` shape.

    Used to restore purchases without a device receipt; 404 when
    RevenueCat has never seen the user.
    """
    try:
        subscriber = await revenuecat.get_subscriber(user_id)
    except TransientVerificationFailure as e:
        logger.warning("Subscriber lookup unavailable for user=%s: %s", user_id, e.message)
        raise ServiceUnavailableError(
            code=ErrorCodes.SUB_VERIFICATION_PENDING,
            message="Subscription could not be confirmed right now",
        )

    if subscriber is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_UNKNOWN_SUBSCRIBER,
            message="No RevenueCat subscriber for this user",
        )

    validation = revenuecat.evaluate_subscriber(
        subscriber,
        None,
        server_time=datetime.now(timezone.utc),
    )
    return {
        "success": True,
        "data": validation.model_dump(mode="json", by_alias=True),
    }


# -------------------------------------------------------------------------
# Entitlement session
# -------------------------------------------------------------------------

@router.post(
    "/session",
    response_model=EntitlementStatusResponse,
)
async def open_session(
    user_id: CurrentUserId,
    manager: SessionManager,
):
    """Login: load the persisted record and start the entitlement session."""
    session = await manager.login(user_id)
    return EntitlementStatusResponse(success=True, data=_status_data(session))


@router.delete("/session")
async def close_session(
    user_id: CurrentUserId,
    manager: SessionManager,
):
    """Logout: stop timers and drop the in-memory record."""
    if not await manager.logout(user_id):
        raise NotFoundError(
            code=ErrorCodes.SUB_NO_SESSION,
            message="No entitlement session for this user",
        )
    return {"success": True, "data": {"closed": True}}


@router.post(
    "/purchase",
    response_model=EntitlementStatusResponse,
)
async def purchase_completed(
    event: PurchaseEventRequest,
    session: EntitlementSession,
):
    """
    Purchase completed on the device.

    Always answers with the resulting status; failures are reported in
    ``notice`` (``pending`` or ``not_subscribed``) rather than as errors.
    """
    await session.handle_purchase(event.receipt, event.product_id)
    return EntitlementStatusResponse(success=True, data=_status_data(session))


@router.post(
    "/refresh",
    response_model=EntitlementStatusResponse,
)
async def refresh_entitlement(session: EntitlementSession):
    """Explicit refresh: re-read the Profile Store and re-verify the receipt."""
    await session.refresh()
    return EntitlementStatusResponse(success=True, data=_status_data(session))


@router.post(
    "/restore",
    response_model=EntitlementStatusResponse,
)
async def restore_purchases(session: EntitlementSession):
    """
    Restore purchases from RevenueCat for a device without a fresh receipt.

    Nothing found is reported as ``notice: not_subscribed``; the current
    entitlement is left as it is.
    """
    await session.restore()
    return EntitlementStatusResponse(success=True, data=_status_data(session))


@router.get(
    "/status",
    response_model=EntitlementStatusResponse,
)
async def get_entitlement_status(session: EntitlementSession):
    """Current entitlement; served from the reconciled record."""
    return EntitlementStatusResponse(success=True, data=_status_data(session))
