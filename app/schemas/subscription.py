"""
Subscription Schemas
====================

``SubscriptionRecord`` (the entitlement snapshot shared by the verifier,
the reconciler and the Profile Store) plus the request/response schemas of
the subscription and webhook endpoints.

Wire format is camelCase (``expiresAt``, ``lastVerifiedAt``...); Python code
uses the snake_case attribute names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.subscription import EntitlementStatus, RecordSource

ENTITLED_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.GRACE_PERIOD})

# Statuses that may carry no expiry
_UNDATED_STATUSES = frozenset({EntitlementStatus.NONE, EntitlementStatus.PENDING_VERIFICATION})


def is_entitled_status(status: EntitlementStatus) -> bool:
    """True for the statuses that grant paid features."""
    return status in ENTITLED_STATUSES


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    """Base for schemas exchanged with the mobile client."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ─── Subscription Record ─────────────────────────────────────────────────────


class SubscriptionRecord(CamelModel):
    """
    Authoritative entitlement snapshot for one user.

    Records are immutable: every transition builds a new record with
    ``replace()``, so a reader never observes a half-applied change.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    user_id: str = Field(min_length=1)
    status: EntitlementStatus = EntitlementStatus.NONE
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    source: RecordSource = RecordSource.CACHE
    last_verified_at: Optional[datetime] = None
    raw_receipt: Optional[str] = Field(default=None, repr=False)

    @field_validator("expires_at", "last_verified_at")
    @classmethod
    def _normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def _check_expiry_present(self) -> "SubscriptionRecord":
        if self.expires_at is None and self.status not in _UNDATED_STATUSES:
            raise ValueError(f"expires_at is required for status '{self.status.value}'")
        return self

    @classmethod
    def empty(cls, user_id: str) -> "SubscriptionRecord":
        """The record every user starts with."""
        return cls(user_id=user_id, status=EntitlementStatus.NONE)

    def replace(self, **changes: Any) -> "SubscriptionRecord":
        """Return a validated copy with ``changes`` applied."""
        if "user_id" in changes and changes["user_id"] != self.user_id:
            raise ValueError("user_id is immutable")
        data = self.model_dump()
        data.update(changes)
        return SubscriptionRecord(**data)

    def supersedes(self, other: "SubscriptionRecord") -> bool:
        """
        Precedence rule: the later ``last_verified_at`` wins, ties go to a
        backend-sourced record. A never-verified record loses to any
        verified one.
        """
        if self.last_verified_at is None:
            return False
        if other.last_verified_at is None:
            return True
        if self.last_verified_at != other.last_verified_at:
            return self.last_verified_at > other.last_verified_at
        return self.source == RecordSource.BACKEND and other.source != RecordSource.BACKEND

    def same_entitlement(self, other: "SubscriptionRecord") -> bool:
        """True when status and expiry match (the notification trigger)."""
        return self.status == other.status and self.expires_at == other.expires_at

    @property
    def is_entitled(self) -> bool:
        return is_entitled_status(self.status)

    def to_public_dict(self) -> dict[str, Any]:
        """Wire representation without the raw receipt."""
        return self.model_dump(mode="json", by_alias=True, exclude={"raw_receipt"})


# ─── Verification Endpoint ───────────────────────────────────────────────────


class ReceiptValidation(CamelModel):
    """
    Response of the billing-verification endpoint.

    ``valid: false`` with a ``reason`` is a definitive rejection.
    ``server_time`` lets the client correct its clock.
    """

    valid: bool
    expires_at: Optional[datetime] = None
    product_id: Optional[str] = None
    reason: Optional[str] = None
    server_time: Optional[datetime] = None

    @field_validator("expires_at", "server_time")
    @classmethod
    def _normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class VerifyReceiptRequest(CamelModel):
    """Request schema for receipt verification."""

    receipt: str = ""
    product_id: Optional[str] = None


class PurchaseEventRequest(CamelModel):
    """Purchase-completed event forwarded from the device billing client."""

    receipt: str = ""
    product_id: Optional[str] = None


class SubscriptionRecordResponse(BaseModel):
    """Response schema for Profile Store reads/writes."""

    success: bool = True
    data: Optional[dict[str, Any]] = None


class EntitlementStatusResponse(BaseModel):
    """Response schema for the feature-gate status."""

    success: bool = True
    data: dict[str, Any]


class FeatureCheckResponse(BaseModel):
    """Response schema for feature access check."""

    success: bool = True
    data: dict[str, Any]


# ─── RevenueCat Webhook Event Types ──────────────────────────────────────────


class RevenueCatEventType(str, Enum):
    """Event types that RevenueCat can send via webhooks."""

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    UNCANCELLATION = "UNCANCELLATION"
    NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    TRANSFER = "TRANSFER"
    SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"


class RevenueCatWebhookEvent(BaseModel):
    """
    The ``event`` object inside a RevenueCat webhook body:
    ``{ "api_version": "1.0", "event": { ... } }``
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(default=None, description="Unique event ID for idempotency")
    type: str
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    product_id: Optional[str] = None
    new_product_id: Optional[str] = None
    event_timestamp_ms: Optional[int] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    grace_period_expiration_at_ms: Optional[int] = None
    entitlement_ids: Optional[list[str]] = None
    transaction_id: Optional[str] = None
    store: Optional[str] = None
    environment: Optional[str] = None
