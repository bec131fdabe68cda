"""
Webhooks API Endpoints
======================

Handles webhooks from external services (RevenueCat).

Authentication:
    RevenueCat sends the configured authorization token in the
    ``Authorization`` header. We compare it against REVENUECAT_WEBHOOK_SECRET.

Idempotency:
    Each RevenueCat event has a unique ``id``. Processed event IDs are kept
    in Redis (with TTL) to prevent duplicate processing.

Ordering:
    Events can arrive late or out of order. A mapped record is only stored
    when it supersedes the stored one (later verification time wins), then
    handed to the user's live entitlement session, if any.
"""

import json
import logging

from fastapi import APIRouter, Header, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ErrorCodes
from app.dependencies import DBSession, RevenueCat, SessionManager
from app.models.subscription import EntitlementEventType
from app.schemas.subscription import RevenueCatWebhookEvent
from app.services.cache import CacheKeys, CacheManager
from app.services.profile_store import SqlProfileStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def _is_event_processed(event_id: str) -> bool:
    """Check if a webhook event has already been processed."""
    return await CacheManager.exists(CacheKeys.webhook_event(event_id))


async def _mark_event_processed(event_id: str) -> None:
    """Mark a webhook event as processed in Redis."""
    await CacheManager.set(
        CacheKeys.webhook_event(event_id),
        "1",
        ttl=CacheManager.TTL_WEEK,
    )


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    db: DBSession,
    revenuecat: RevenueCat,
    manager: SessionManager,
    authorization: str = Header(default="", alias="Authorization"),
):
    """
    Handle RevenueCat webhook events.

    Entitlement-changing events:
    - INITIAL_PURCHASE / RENEWAL / UNCANCELLATION / PRODUCT_CHANGE /
      NON_RENEWING_PURCHASE / CANCELLATION -> active until expiry
    - BILLING_ISSUE -> grace_period
    - EXPIRATION -> expired

    Other types (SUBSCRIBER_ALIAS, TRANSFER...) are acknowledged as no-ops.
    Returns 500 on processing errors so RevenueCat retries.
    """
    # ── Verify authorization ──────────────────────────────────────────────
    if not revenuecat.verify_webhook_authorization(authorization):
        logger.warning("Unauthorized RevenueCat webhook attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": ErrorCodes.WEBHOOK_UNAUTHORIZED,
                "message": "Invalid webhook authorization",
            },
        )

    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
        event_data = payload.get("event") or {}
        if not event_data.get("type"):
            logger.info("Webhook received with no event type, acknowledging")
            return {"received": True}
        event = RevenueCatWebhookEvent.model_validate(event_data)
    except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, PydanticValidationError) as e:
        logger.error("Invalid webhook payload: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
                "message": "Invalid JSON payload",
            },
        )

    logger.info(
        "Webhook received: type=%s user=%s event_id=%s",
        event.type,
        event.app_user_id,
        event.id,
    )

    # ── Idempotency check ─────────────────────────────────────────────────
    if event.id and await _is_event_processed(event.id):
        logger.info("Duplicate webhook event %s, skipping", event.id)
        return {"received": True, "duplicate": True}

    user_id = revenuecat.resolve_user_id(event)
    if user_id is None:
        logger.warning("Webhook %s has only anonymous ids, ignoring", event.type)
        return {"received": True, "ignored": True}

    # ── Process event ─────────────────────────────────────────────────────
    store = SqlProfileStore(db)
    try:
        current = await store.get_subscription_record(user_id)
        record = revenuecat.record_from_webhook_event(event, user_id, current)

        if record is not None and current is not None and not record.supersedes(current):
            logger.info(
                "Stale webhook %s for user=%s (event %s <= stored %s), skipping",
                event.type,
                user_id,
                record.last_verified_at,
                current.last_verified_at,
            )
            record = None
        elif record is not None:
            await store.put_subscription_record(
                user_id,
                record,
                event_type=EntitlementEventType.BACKEND_UPDATE,
                event_data=event_data,
            )

        await db.commit()

        if event.id:
            await _mark_event_processed(event.id)

        logger.info(
            "Webhook processed: type=%s user=%s event_id=%s",
            event.type,
            user_id,
            event.id,
        )

    except Exception:
        logger.exception(
            "Webhook processing error: type=%s user=%s event_id=%s",
            event.type,
            user_id,
            event.id,
        )
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing webhook",
        )

    # ── Fan out to the live session ───────────────────────────────────────
    if record is not None:
        try:
            await manager.publish_backend_record(record)
        except Exception:
            # Stored already; the session catches up on its next refresh
            logger.exception("Could not apply webhook record to session of user=%s", user_id)

    return {"received": True}
