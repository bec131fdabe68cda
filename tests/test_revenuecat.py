"""
RevenueCat Service Tests
========================

Receipt validation against a mocked RevenueCat API, subscriber evaluation,
webhook authorization and webhook event mapping.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core.errors import TransientVerificationFailure
from app.models.subscription import EntitlementStatus, RecordSource, SubscriptionTier
from app.schemas.subscription import RevenueCatWebhookEvent, SubscriptionRecord
from app.services.revenuecat import RevenueCatService

from tests.fakes import NOW, USER_ID


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _service(handler) -> RevenueCatService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RevenueCatService(client=client)


def _subscriber(**subscriptions) -> dict:
    return {"subscriber": {"subscriptions": subscriptions}}


def _event(type_: str, **fields) -> RevenueCatWebhookEvent:
    data = {
        "id": "evt_1",
        "type": type_,
        "app_user_id": USER_ID,
        "product_id": "com.steadysteps.monthly",
        "event_timestamp_ms": _ms(NOW),
        "expiration_at_ms": _ms(NOW + timedelta(days=30)),
        "entitlement_ids": ["pro"],
    }
    data.update(fields)
    return RevenueCatWebhookEvent(**data)


class TestValidateReceipt:
    @pytest.mark.asyncio
    async def test_active_subscription_is_valid(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["platform"] = request.headers.get("X-Platform")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_subscriber(**{
                "com.steadysteps.monthly": {"expires_date": "2026-04-01T00:00:00Z"},
            }))

        result = await _service(handler).validate_receipt(
            "tok_abc",
            "com.steadysteps.monthly",
            app_user_id=USER_ID,
        )

        assert result.valid is True
        assert result.expires_at == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert result.product_id == "com.steadysteps.monthly"
        assert result.server_time is not None
        assert seen["url"].endswith("/v1/receipts")
        assert seen["platform"] == "ios"
        assert seen["body"]["fetch_token"] == "tok_abc"
        assert seen["body"]["app_user_id"] == USER_ID

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 422])
    async def test_receipt_error_is_a_rejection(self, status_code):
        def handler(request):
            return httpx.Response(status_code, json={"code": 7103, "message": "Invalid receipt"})

        result = await _service(handler).validate_receipt("tok_bad", None)

        assert result.valid is False
        assert result.reason == "Invalid receipt"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403, 404])
    async def test_credential_and_routing_errors_are_transient(self, status_code):
        def handler(request):
            return httpx.Response(status_code, json={"message": "Invalid API key"})

        with pytest.raises(TransientVerificationFailure):
            await _service(handler).validate_receipt("tok_abc", None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503, 429])
    async def test_outage_is_transient(self, status_code):
        def handler(request):
            return httpx.Response(status_code, text="unavailable")

        with pytest.raises(TransientVerificationFailure):
            await _service(handler).validate_receipt("tok_abc", None)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientVerificationFailure):
            await _service(handler).validate_receipt("tok_abc", None)

    @pytest.mark.asyncio
    async def test_missing_api_key_is_transient(self):
        service = _service(lambda request: httpx.Response(200, json={}))
        service.api_key = ""

        with pytest.raises(TransientVerificationFailure):
            await service.validate_receipt("tok_abc", None)


class TestGetSubscriber:
    @pytest.mark.asyncio
    async def test_unknown_subscriber_is_none(self):
        service = _service(lambda request: httpx.Response(404, json={}))
        assert await service.get_subscriber(USER_ID) is None

    @pytest.mark.asyncio
    async def test_known_subscriber(self):
        service = _service(lambda request: httpx.Response(200, json=_subscriber()))
        assert await service.get_subscriber(USER_ID) == {"subscriptions": {}}


class TestEvaluateSubscriber:
    def setup_method(self):
        self.service = RevenueCatService()

    def test_no_subscription(self):
        result = self.service.evaluate_subscriber({"subscriptions": {}}, None)
        assert result.valid is False
        assert result.reason == "no_subscription"

    def test_refunded(self):
        result = self.service.evaluate_subscriber({"subscriptions": {
            "com.steadysteps.monthly": {
                "expires_date": "2026-04-01T00:00:00Z",
                "refunded_at": "2026-03-02T00:00:00Z",
            },
        }}, "com.steadysteps.monthly")

        assert result.valid is False
        assert result.reason == "refunded"

    def test_latest_expiry_is_picked_without_product(self):
        result = self.service.evaluate_subscriber({"subscriptions": {
            "com.steadysteps.monthly": {"expires_date": "2026-04-01T00:00:00Z"},
            "com.steadysteps.annual": {"expires_date": "2027-03-01T00:00:00Z"},
        }}, None)

        assert result.valid is True
        assert result.product_id == "com.steadysteps.annual"

    def test_configured_entitlement_decides(self):
        result = self.service.evaluate_subscriber({
            "entitlements": {
                "pro": {
                    "expires_date": "2026-05-01T00:00:00Z",
                    "product_identifier": "com.steadysteps.annual",
                },
            },
            "subscriptions": {
                "com.steadysteps.monthly": {"expires_date": "2026-09-01T00:00:00Z"},
                "com.steadysteps.annual": {"expires_date": "2026-04-01T00:00:00Z"},
            },
        }, "com.steadysteps.monthly")

        assert result.valid is True
        assert result.product_id == "com.steadysteps.annual"
        assert result.expires_at == datetime(2026, 5, 1, tzinfo=timezone.utc)

    def test_subscription_without_the_entitlement_is_refused(self):
        result = self.service.evaluate_subscriber({
            "entitlements": {
                "legacy": {
                    "expires_date": "2026-05-01T00:00:00Z",
                    "product_identifier": "com.steadysteps.legacy",
                },
            },
            "subscriptions": {
                "com.steadysteps.legacy": {"expires_date": "2026-05-01T00:00:00Z"},
            },
        }, "com.steadysteps.legacy")

        assert result.valid is False
        assert result.reason == "entitlement_not_granted"

    def test_refunded_entitlement_product(self):
        result = self.service.evaluate_subscriber({
            "entitlements": {
                "pro": {
                    "expires_date": "2026-05-01T00:00:00Z",
                    "product_identifier": "com.steadysteps.monthly",
                },
            },
            "subscriptions": {
                "com.steadysteps.monthly": {
                    "expires_date": "2026-05-01T00:00:00Z",
                    "refunded_at": "2026-03-02T00:00:00Z",
                },
            },
        }, None)

        assert result.valid is False
        assert result.reason == "refunded"

    def test_lapsed_subscription_is_still_valid(self):
        result = self.service.evaluate_subscriber({"subscriptions": {
            "com.steadysteps.monthly": {"expires_date": "2026-01-01T00:00:00Z"},
        }}, "com.steadysteps.monthly")

        assert result.valid is True
        assert result.expires_at < NOW


class TestWebhookAuthorization:
    def test_accepts_secret_with_or_without_bearer(self):
        service = RevenueCatService()
        assert service.verify_webhook_authorization("test-webhook-secret")
        assert service.verify_webhook_authorization("Bearer test-webhook-secret")

    @pytest.mark.parametrize("header", [None, "", "wrong", "Bearer wrong"])
    def test_rejects_other_values(self, header):
        assert not RevenueCatService().verify_webhook_authorization(header)


class TestTierMapping:
    @pytest.mark.parametrize(
        "product_id,tier",
        [
            ("com.steadysteps.annual", SubscriptionTier.ANNUAL),
            ("com.steadysteps.yearly", SubscriptionTier.ANNUAL),
            ("com.steadysteps.monthly", SubscriptionTier.MONTHLY),
            ("com.steadysteps.lifetime", SubscriptionTier.FREE),
            (None, SubscriptionTier.FREE),
        ],
    )
    def test_map_tier_from_product(self, product_id, tier):
        assert RevenueCatService.map_tier_from_product(product_id) == tier


class TestWebhookMapping:
    def setup_method(self):
        self.service = RevenueCatService()

    @pytest.mark.parametrize("type_", ["INITIAL_PURCHASE", "RENEWAL", "UNCANCELLATION", "CANCELLATION"])
    def test_paid_events_are_active_until_expiry(self, type_):
        record = self.service.record_from_webhook_event(_event(type_), USER_ID)

        assert record.status == EntitlementStatus.ACTIVE
        assert record.source == RecordSource.BACKEND
        assert record.last_verified_at == NOW
        assert record.expires_at == NOW + timedelta(days=30)

    def test_expiration(self):
        record = self.service.record_from_webhook_event(
            _event("EXPIRATION", expiration_at_ms=_ms(NOW - timedelta(minutes=1))),
            USER_ID,
        )
        assert record.status == EntitlementStatus.EXPIRED

    def test_billing_issue_is_grace_period(self):
        record = self.service.record_from_webhook_event(
            _event("BILLING_ISSUE", expiration_at_ms=_ms(NOW - timedelta(hours=1))),
            USER_ID,
        )
        assert record.status == EntitlementStatus.GRACE_PERIOD
        assert record.is_entitled is True

    def test_product_change_uses_new_product(self):
        record = self.service.record_from_webhook_event(
            _event("PRODUCT_CHANGE", new_product_id="com.steadysteps.annual"),
            USER_ID,
        )
        assert record.product_id == "com.steadysteps.annual"

    def test_renewal_keeps_stored_receipt(self):
        current = SubscriptionRecord(
            user_id=USER_ID,
            status=EntitlementStatus.ACTIVE,
            expires_at=NOW,
            source=RecordSource.BACKEND,
            last_verified_at=NOW - timedelta(days=30),
            raw_receipt="tok_abc",
        )
        record = self.service.record_from_webhook_event(_event("RENEWAL"), USER_ID, current)
        assert record.raw_receipt == "tok_abc"

    def test_other_entitlement_is_ignored(self):
        event = _event("INITIAL_PURCHASE", entitlement_ids=["other"])
        assert self.service.record_from_webhook_event(event, USER_ID) is None

    @pytest.mark.parametrize("type_", ["SUBSCRIBER_ALIAS", "TRANSFER", "SOMETHING_NEW"])
    def test_no_op_events(self, type_):
        assert self.service.record_from_webhook_event(_event(type_), USER_ID) is None

    def test_purchase_without_expiry_is_ignored(self):
        event = _event("NON_RENEWING_PURCHASE", expiration_at_ms=None)
        assert self.service.record_from_webhook_event(event, USER_ID) is None

    def test_resolve_user_id_skips_anonymous_ids(self):
        event = _event(
            "INITIAL_PURCHASE",
            app_user_id="$RCAnonymousID:abc",
            original_app_user_id="$RCAnonymousID:def",
            aliases=["$RCAnonymousID:abc", USER_ID],
        )
        assert RevenueCatService.resolve_user_id(event) == USER_ID

    def test_resolve_user_id_all_anonymous(self):
        event = _event("INITIAL_PURCHASE", app_user_id="$RCAnonymousID:abc")
        assert RevenueCatService.resolve_user_id(event) is None
