"""
Entitlement Backend Tests
=========================

HTTP backend error mapping against a mock transport, and the in-process
backend's composition of RevenueCat and the Profile Store.
"""

import json
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import MalformedReceipt, PersistenceFailure, TransientVerificationFailure
from app.models.subscription import EntitlementStatus, RecordSource
from app.schemas.subscription import SubscriptionRecord
from app.services.entitlement_backend import HttpEntitlementBackend, ServiceEntitlementBackend
from app.services.entitlement_reconciler import EntitlementNotice, EntitlementReconciler
from app.services.receipt_verifier import EntitlementVerifier, RetryPolicy
from app.services.revenuecat import RevenueCatService

from tests.fakes import NOW, USER_ID, valid


def _backend(handler) -> HttpEntitlementBackend:
    return HttpEntitlementBackend(
        "access-token",
        base_url="http://test",
        transport=httpx.MockTransport(handler),
    )


def _record(**overrides) -> SubscriptionRecord:
    data = {
        "user_id": USER_ID,
        "status": EntitlementStatus.ACTIVE,
        "product_id": "com.steadysteps.monthly",
        "expires_at": NOW + timedelta(days=30),
        "source": RecordSource.BACKEND,
        "last_verified_at": NOW,
    }
    data.update(overrides)
    return SubscriptionRecord(**data)


class TestHttpVerify:
    @pytest.mark.asyncio
    async def test_valid_response_is_unwrapped(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "success": True,
                "data": {
                    "valid": True,
                    "expiresAt": "2026-04-01T00:00:00Z",
                    "productId": "com.steadysteps.monthly",
                    "serverTime": "2026-03-01T12:00:00Z",
                },
            })

        async with _backend(handler) as backend:
            result = await backend.verify_receipt("tok_abc", "com.steadysteps.monthly")

        assert result.valid is True
        assert result.product_id == "com.steadysteps.monthly"
        assert result.server_time == NOW
        assert seen["auth"] == "Bearer access-token"
        assert seen["body"] == {"receipt": "tok_abc", "productId": "com.steadysteps.monthly"}

    @pytest.mark.asyncio
    async def test_invalid_response_is_returned(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "data": {"valid": False, "reason": "refunded"},
            })

        async with _backend(handler) as backend:
            result = await backend.verify_receipt("tok_abc", None)

        assert result.valid is False
        assert result.reason == "refunded"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 503, 401, 429])
    async def test_server_and_auth_errors_are_transient(self, status_code):
        def handler(request):
            return httpx.Response(status_code, json={"success": False})

        async with _backend(handler) as backend:
            with pytest.raises(TransientVerificationFailure):
                await backend.verify_receipt("tok_abc", None)

    @pytest.mark.asyncio
    async def test_malformed_receipt_error_code(self):
        def handler(request):
            return httpx.Response(400, json={
                "success": False,
                "error": {"code": "SUB_001", "message": "Receipt must be a non-empty string"},
            })

        async with _backend(handler) as backend:
            with pytest.raises(MalformedReceipt):
                await backend.verify_receipt(" ", None)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _backend(handler) as backend:
            with pytest.raises(TransientVerificationFailure):
                await backend.verify_receipt("tok_abc", None)

    @pytest.mark.asyncio
    async def test_unparseable_body_is_transient(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>gateway</html>")

        async with _backend(handler) as backend:
            with pytest.raises(TransientVerificationFailure):
                await backend.verify_receipt("tok_abc", None)


class TestHttpProfileStore:
    @pytest.mark.asyncio
    async def test_missing_record_is_none(self):
        def handler(request):
            return httpx.Response(404, json={"success": False})

        async with _backend(handler) as backend:
            assert await backend.get_subscription_record(USER_ID) is None

    @pytest.mark.asyncio
    async def test_record_round_trips_as_camel_case(self):
        stored = {}

        def handler(request):
            if request.method == "PUT":
                stored.update(json.loads(request.content))
                return httpx.Response(200, json={"success": True, "data": stored})
            return httpx.Response(200, json={"success": True, "data": stored})

        record = _record(raw_receipt="tok_abc")
        async with _backend(handler) as backend:
            await backend.put_subscription_record(USER_ID, record)
            loaded = await backend.get_subscription_record(USER_ID)

        assert stored["userId"] == USER_ID
        assert stored["rawReceipt"] == "tok_abc"
        assert loaded == record

    @pytest.mark.asyncio
    async def test_other_users_record_is_a_failure(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "data": _record(user_id="someone-else").model_dump(mode="json", by_alias=True),
            })

        async with _backend(handler) as backend:
            with pytest.raises(PersistenceFailure):
                await backend.get_subscription_record(USER_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["get", "put"])
    async def test_store_errors_are_persistence_failures(self, method):
        def handler(request):
            return httpx.Response(503, json={"success": False})

        async with _backend(handler) as backend:
            with pytest.raises(PersistenceFailure):
                if method == "get":
                    await backend.get_subscription_record(USER_ID)
                else:
                    await backend.put_subscription_record(USER_ID, _record())


def _session_factory(db):
    @asynccontextmanager
    async def factory():
        yield db

    return factory


class TestServiceBackend:
    @pytest.mark.asyncio
    async def test_verify_delegates_with_app_user_id(self):
        revenuecat = MagicMock()
        revenuecat.validate_receipt = AsyncMock(return_value=valid(NOW + timedelta(days=30)))
        backend = ServiceEntitlementBackend(USER_ID, revenuecat, _session_factory(MagicMock()))

        result = await backend.verify_receipt("tok_abc", "com.steadysteps.monthly")

        assert result.valid is True
        revenuecat.validate_receipt.assert_awaited_once_with(
            "tok_abc",
            "com.steadysteps.monthly",
            app_user_id=USER_ID,
        )

    @pytest.mark.asyncio
    async def test_put_commits(self, db_session):
        backend = ServiceEntitlementBackend(USER_ID, MagicMock(), _session_factory(db_session))
        record = _record()

        with patch("app.services.profile_store.SqlProfileStore") as store_cls:
            store_cls.return_value.put_subscription_record = AsyncMock(return_value=record)
            await backend.put_subscription_record(USER_ID, record)

        store_cls.return_value.put_subscription_record.assert_awaited_once_with(USER_ID, record)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_commit_error_is_persistence_failure(self, db_session):
        db_session.commit = AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("down")))
        backend = ServiceEntitlementBackend(USER_ID, MagicMock(), _session_factory(db_session))

        with patch("app.services.profile_store.SqlProfileStore") as store_cls:
            store_cls.return_value.put_subscription_record = AsyncMock()
            with pytest.raises(PersistenceFailure):
                await backend.put_subscription_record(USER_ID, _record())

    @pytest.mark.asyncio
    async def test_get_reads_profile_store(self, db_session):
        backend = ServiceEntitlementBackend(USER_ID, MagicMock(), _session_factory(db_session))

        with patch("app.services.profile_store.SqlProfileStore") as store_cls:
            store_cls.return_value.get_subscription_record = AsyncMock(return_value=_record())
            record = await backend.get_subscription_record(USER_ID)

        assert record.status == EntitlementStatus.ACTIVE
        store_cls.assert_called_once_with(db_session)


class TestHttpSubscriberLookup:
    @pytest.mark.asyncio
    async def test_subscriber_is_unwrapped(self):
        def handler(request):
            assert request.url.path == "/api/v1/subscription/subscriber"
            return httpx.Response(200, json={
                "success": True,
                "data": {"valid": True, "expiresAt": "2026-04-01T00:00:00Z", "productId": "com.steadysteps.annual"},
            })

        async with _backend(handler) as backend:
            result = await backend.lookup_subscription(USER_ID)

        assert result.valid is True
        assert result.product_id == "com.steadysteps.annual"

    @pytest.mark.asyncio
    async def test_unknown_subscriber_is_none(self):
        async with _backend(lambda request: httpx.Response(404, json={"success": False})) as backend:
            assert await backend.lookup_subscription(USER_ID) is None

    @pytest.mark.asyncio
    async def test_outage_is_transient(self):
        async with _backend(lambda request: httpx.Response(503, json={"success": False})) as backend:
            with pytest.raises(TransientVerificationFailure):
                await backend.lookup_subscription(USER_ID)


class TestServiceBackendLookup:
    @pytest.mark.asyncio
    async def test_lookup_evaluates_subscriber(self):
        revenuecat = MagicMock()
        revenuecat.get_subscriber = AsyncMock(return_value={"entitlements": {}})
        revenuecat.evaluate_subscriber.return_value = valid(NOW + timedelta(days=30))
        backend = ServiceEntitlementBackend(USER_ID, revenuecat, _session_factory(MagicMock()))

        result = await backend.lookup_subscription(USER_ID)

        assert result.valid is True
        revenuecat.get_subscriber.assert_awaited_once_with(USER_ID)
        assert revenuecat.evaluate_subscriber.call_args.args[:2] == ({"entitlements": {}}, None)

    @pytest.mark.asyncio
    async def test_unknown_subscriber_is_none(self):
        revenuecat = MagicMock()
        revenuecat.get_subscriber = AsyncMock(return_value=None)
        backend = ServiceEntitlementBackend(USER_ID, revenuecat, _session_factory(MagicMock()))

        assert await backend.lookup_subscription(USER_ID) is None
        revenuecat.evaluate_subscriber.assert_not_called()


class TestServiceBackendSession:
    @pytest.mark.asyncio
    async def test_revenuecat_auth_error_keeps_paid_user_entitled(self, db_session, clock):
        def handler(request):
            return httpx.Response(401, json={"message": "Invalid API key"})

        revenuecat = RevenueCatService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        backend = ServiceEntitlementBackend(USER_ID, revenuecat, _session_factory(db_session))
        verifier = EntitlementVerifier(
            backend,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
            clock=clock,
            timeout=1.0,
            sleep=AsyncMock(),
        )
        session = EntitlementReconciler(USER_ID, backend, verifier, clock=clock)
        notices = []
        session.on_notice(lambda notice, error: notices.append(notice))

        with patch("app.services.profile_store.SqlProfileStore") as store_cls:
            store_cls.return_value.get_subscription_record = AsyncMock(
                return_value=_record(raw_receipt="tok_abc")
            )
            store_cls.return_value.put_subscription_record = AsyncMock()
            await session.start()
            await session.wait_for_background()

        try:
            assert session.current_status() == EntitlementStatus.ACTIVE
            assert session.is_entitled() is True
            assert notices == [EntitlementNotice.PENDING]
        finally:
            await session.close()
