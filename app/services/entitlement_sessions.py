"""
Entitlement Sessions
====================

One ``EntitlementReconciler`` per logged-in user, hosted by this process.

The manager owns the reconcilers' lifecycle (login starts one, logout
closes it) and routes backend-driven records (webhooks) to the live
session of their user, if any.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.schemas.subscription import SubscriptionRecord
from app.services.clock import TrustedClock
from app.services.entitlement_backend import EntitlementBackend, ServiceEntitlementBackend
from app.services.entitlement_reconciler import EntitlementReconciler
from app.services.receipt_verifier import EntitlementVerifier
from app.services.revenuecat import RevenueCatService

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], EntitlementBackend]


class EntitlementSessionManager:
    """Registry of live entitlement sessions keyed by user id."""

    def __init__(
        self,
        backend_factory: BackendFactory,
        *,
        clock: Optional[TrustedClock] = None,
    ):
        self._backend_factory = backend_factory
        self._clock = clock or TrustedClock()
        self._sessions: dict[str, EntitlementReconciler] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def for_service(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        revenuecat: Optional[RevenueCatService] = None,
    ) -> "EntitlementSessionManager":
        """Sessions backed by RevenueCat and the SQL Profile Store."""
        revenuecat = revenuecat or RevenueCatService()
        return cls(
            lambda user_id: ServiceEntitlementBackend(user_id, revenuecat, session_factory)
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def get(self, user_id: str) -> Optional[EntitlementReconciler]:
        return self._sessions.get(user_id)

    def user_ids(self) -> frozenset[str]:
        return frozenset(self._sessions)

    async def login(self, user_id: str) -> EntitlementReconciler:
        """Start (or return the existing) session for ``user_id``."""
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session

            backend = self._backend_factory(user_id)
            verifier = EntitlementVerifier(backend, clock=self._clock)
            session = EntitlementReconciler(user_id, backend, verifier, clock=self._clock)
            self._sessions[user_id] = session

        try:
            await session.start()
        except Exception:
            async with self._lock:
                if self._sessions.get(user_id) is session:
                    del self._sessions[user_id]
            await session.close()
            raise

        logger.info("Entitlement session opened: user=%s (live=%d)", user_id, len(self._sessions))
        return session

    async def logout(self, user_id: str) -> bool:
        """Close the session of ``user_id``. Returns False if there was none."""
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        await session.close()
        await _close_backend(session.backend)
        return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
            await _close_backend(session.backend)
        if sessions:
            logger.info("Closed %d entitlement sessions", len(sessions))

    async def publish_backend_record(
        self,
        record: SubscriptionRecord,
    ) -> Optional[SubscriptionRecord]:
        """
        Hand a backend-written record to the user's live session.

        Returns the session's reconciled record, or None when the user has
        no live session.
        """
        session = self._sessions.get(record.user_id)
        if session is None:
            return None
        return await session.apply_backend_record(record)


async def _close_backend(backend: EntitlementBackend) -> None:
    aclose = getattr(backend, "aclose", None)
    if aclose is not None:
        await aclose()


# Process-wide manager, created in the application lifespan
_manager: Optional[EntitlementSessionManager] = None


def get_session_manager() -> EntitlementSessionManager:
    """Get or create the process-wide session manager."""
    global _manager
    if _manager is None:
        from app.db.session import get_session_factory

        _manager = EntitlementSessionManager.for_service(get_session_factory())
    return _manager


def live_user_ids() -> frozenset[str]:
    """Users with a live session in this process; never creates the manager."""
    if _manager is None:
        return frozenset()
    return _manager.user_ids()


def set_session_manager(manager: Optional[EntitlementSessionManager]) -> None:
    """Replace the process-wide manager (application startup and tests)."""
    global _manager
    _manager = manager
