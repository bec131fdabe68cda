"""
Features API Endpoints
======================

Feature access checks against the caller's entitlement session.
"""

from fastapi import APIRouter, Query

from app.core.feature_limits import (
    effective_tier,
    get_feature_limits,
    get_required_tier_for_feature,
    has_feature,
)
from app.dependencies import EntitlementSession
from app.schemas.subscription import FeatureCheckResponse

router = APIRouter()


@router.get(
    "/check",
    response_model=FeatureCheckResponse,
)
async def check_feature_access(
    session: EntitlementSession,
    feature: str = Query(
        ...,
        description="Feature to check (progress_insights, coach_tips, etc.)",
    ),
):
    """
    Check if user has access to a specific feature.
    """
    tier = effective_tier(session).value

    if has_feature(tier, feature):
        return FeatureCheckResponse(
            success=True,
            data={
                "feature": feature,
                "has_access": True,
                "current_tier": tier,
                "status": session.current_status().value,
            },
        )

    required_tier = get_required_tier_for_feature(feature)

    return FeatureCheckResponse(
        success=True,
        data={
            "feature": feature,
            "has_access": False,
            "current_tier": tier,
            "required_tier": required_tier,
            "status": session.current_status().value,
            "reason": "This feature requires a premium subscription",
        },
    )


@router.get(
    "/all",
)
async def get_all_features(session: EntitlementSession):
    """
    Get all feature limits for the user's current tier.
    """
    tier = effective_tier(session).value

    return {
        "success": True,
        "data": {
            "tier": tier,
            "is_entitled": session.is_entitled(),
            "features": get_feature_limits(tier),
        },
    }
