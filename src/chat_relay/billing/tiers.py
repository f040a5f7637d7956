import math
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Tuple, Union

from ..models.chat import ModelId

UNLIMITED = -1


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierConfig:
    name: str
    price: int
    message_ceiling: int  # -1 = unlimited
    models: FrozenSet[ModelId]
    features: Tuple[str, ...]


_PRO_FEATURES = ("basic_chat", "chat_history", "export", "regenerate", "edit_message")

TIERS: dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.FREE: TierConfig(
        name="Free",
        price=0,
        message_ceiling=50,
        models=frozenset({
            ModelId.GPT_35_TURBO,
            ModelId.GEMINI_PRO,
            ModelId.GEMINI_20_FLASH,
        }),
        features=("basic_chat",),
    ),
    SubscriptionTier.PRO: TierConfig(
        name="Pro",
        price=10,
        message_ceiling=1000,
        models=frozenset({
            ModelId.GPT_35_TURBO,
            ModelId.GPT_4,
            ModelId.GPT_4O,
            ModelId.CLAUDE_3_SONNET,
            ModelId.CLAUDE_35_SONNET,
            ModelId.GEMINI_PRO,
            ModelId.GEMINI_15_PRO,
            ModelId.GEMINI_15_FLASH,
            ModelId.GEMINI_20_FLASH,
        }),
        features=_PRO_FEATURES,
    ),
    SubscriptionTier.ENTERPRISE: TierConfig(
        name="Enterprise",
        price=50,
        message_ceiling=UNLIMITED,
        models=frozenset(ModelId),
        features=_PRO_FEATURES + ("priority_support", "custom_models", "api_access"),
    ),
}

MODEL_DISPLAY_NAMES: dict[ModelId, str] = {
    ModelId.GPT_35_TURBO: "GPT-3.5 Turbo",
    ModelId.GPT_4: "GPT-4",
    ModelId.GPT_4_TURBO: "GPT-4 Turbo",
    ModelId.GPT_4O: "GPT-4o",
    ModelId.CLAUDE_3_HAIKU: "Claude 3 Haiku",
    ModelId.CLAUDE_3_SONNET: "Claude 3 Sonnet",
    ModelId.CLAUDE_3_OPUS: "Claude 3 Opus",
    ModelId.CLAUDE_35_SONNET: "Claude 3.5 Sonnet",
    ModelId.GEMINI_PRO: "Gemini Pro",
    ModelId.GEMINI_15_PRO: "Gemini 1.5 Pro",
    ModelId.GEMINI_15_FLASH: "Gemini 1.5 Flash",
    ModelId.GEMINI_20_FLASH: "Gemini 2.0 Flash",
}


def parse_tier(value: Union[str, SubscriptionTier, None]) -> SubscriptionTier:
    """Coerce a stored tier value, falling back to free for anything unknown."""
    try:
        return SubscriptionTier(value)
    except ValueError:
        return SubscriptionTier.FREE


def get_tier_config(tier: Union[str, SubscriptionTier]) -> TierConfig:
    return TIERS[parse_tier(tier)]


def can_access_model(tier: SubscriptionTier, model: Union[str, ModelId]) -> bool:
    try:
        model = ModelId(model)
    except ValueError:
        return False
    return model in get_tier_config(tier).models


def has_feature(tier: SubscriptionTier, feature: str) -> bool:
    features = get_tier_config(tier).features
    return feature in features or "all" in features


def message_ceiling(tier: SubscriptionTier) -> int:
    return get_tier_config(tier).message_ceiling


def is_unlimited(tier: SubscriptionTier) -> bool:
    return message_ceiling(tier) == UNLIMITED


def usage_percentage(used: int, limit: int) -> int:
    if limit == UNLIMITED:
        return 0
    if limit == 0:
        return 100
    return min(math.floor(used / limit * 100 + 0.5), 100)


def is_near_limit(used: int, limit: int, threshold: float = 0.8) -> bool:
    if limit == UNLIMITED or limit == 0:
        return False
    return used / limit > threshold


def model_display_name(model: Union[str, ModelId]) -> str:
    try:
        return MODEL_DISPLAY_NAMES[ModelId(model)]
    except ValueError:
        return str(model)
