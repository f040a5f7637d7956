"""Subscription tiers and quota enforcement."""

from .quota import QuotaDecision, UsageSummary, evaluate_quota, summarize_usage
from .tiers import (
    TIERS,
    UNLIMITED,
    SubscriptionTier,
    TierConfig,
    can_access_model,
    get_tier_config,
    has_feature,
    is_near_limit,
    is_unlimited,
    message_ceiling,
    model_display_name,
    parse_tier,
    usage_percentage,
)

__all__ = [
    "QuotaDecision",
    "evaluate_quota",
    "UsageSummary",
    "summarize_usage",
    "TIERS",
    "UNLIMITED",
    "SubscriptionTier",
    "TierConfig",
    "can_access_model",
    "get_tier_config",
    "has_feature",
    "is_near_limit",
    "is_unlimited",
    "message_ceiling",
    "model_display_name",
    "parse_tier",
    "usage_percentage",
]
