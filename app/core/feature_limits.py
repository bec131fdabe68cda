"""
Feature Limits
==============

Feature limit definitions and the entitlement gate for endpoints.

Access requires both an entitled session (``active`` or ``grace_period``)
and a tier that includes the feature. A user whose status is anything
else is treated as ``free`` regardless of the product they once bought;
an entitled user is never below ``monthly``.
"""

from app.core.errors import ForbiddenError
from app.dependencies import EntitlementSession
from app.models.subscription import SubscriptionTier
from app.services.entitlement_reconciler import EntitlementReconciler
from app.services.revenuecat import RevenueCatService


# Feature limits by subscription tier
FEATURE_LIMITS = {
    "free": {
        "daily_checkins": True,
        "habit_logging": True,
        "coach_tips": False,
        "micro_lessons": False,
        "progress_insights": False,
        "weekly_reflection": False,
        "accountability_matching": False,
        "priority_support": False,
    },
    "monthly": {
        "daily_checkins": True,
        "habit_logging": True,
        "coach_tips": True,
        "micro_lessons": True,
        "progress_insights": True,
        "weekly_reflection": True,
        "accountability_matching": True,
        "priority_support": False,
    },
    "annual": {
        "daily_checkins": True,
        "habit_logging": True,
        "coach_tips": True,
        "micro_lessons": True,
        "progress_insights": True,
        "weekly_reflection": True,
        "accountability_matching": True,
        "priority_support": True,
    },
}


def get_feature_limits(tier: str) -> dict:
    """Get feature limits for a subscription tier."""
    return FEATURE_LIMITS.get(tier, FEATURE_LIMITS["free"])


def has_feature(tier: str, feature: str) -> bool:
    """Check if a tier has access to a specific feature."""
    return bool(get_feature_limits(tier).get(feature, False))


def get_required_tier_for_feature(feature: str) -> str:
    """Get the minimum tier required for a feature."""
    for tier in ("free", "monthly"):
        if FEATURE_LIMITS[tier].get(feature):
            return tier
    return "annual"


def effective_tier(session: EntitlementReconciler) -> SubscriptionTier:
    """
    Tier granted right now; ``free`` unless the session is entitled.

    An entitled session whose product is unknown or missing gets the
    lowest paid tier.
    """
    if not session.is_entitled():
        return SubscriptionTier.FREE
    tier = RevenueCatService.map_tier_from_product(session.record.product_id)
    if tier == SubscriptionTier.FREE:
        return SubscriptionTier.MONTHLY
    return tier


class FeatureGate:
    """
    Feature gate for protecting endpoints based on the caller's entitlement.

    Usage:
        @router.post("/endpoint")
        async def endpoint(
            session: EntitlementSession,
            _: None = Depends(FeatureGate("progress_insights")),
        ):
            ...
    """

    def __init__(self, feature: str):
        self.feature = feature

    def check(self, session: EntitlementReconciler) -> None:
        """Raise FEATURE_LOCKED unless ``session`` may use the feature."""
        tier = effective_tier(session).value
        if has_feature(tier, self.feature):
            return

        required_tier = get_required_tier_for_feature(self.feature)
        raise ForbiddenError(
            message=f"This feature requires a {required_tier} subscription",
            feature=self.feature,
            required_tier=required_tier,
            current_tier=tier,
            subscription_status=session.current_status().value,
        )

    async def __call__(self, session: EntitlementSession) -> None:
        self.check(session)
