"""Monthly message quota enforcement."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..models.usage import UsagePeriodRecord, next_month_start
from .tiers import UNLIMITED, SubscriptionTier, is_near_limit, message_ceiling, usage_percentage


class QuotaDecision(BaseModel):
    """Outcome of a quota or rate check. ``-1`` means unlimited."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    reason: Optional[str] = None


def evaluate_quota(
    tier: SubscriptionTier,
    messages_used: int,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """Decide whether a user on ``tier`` who already sent ``messages_used`` messages
    this month may send another one.

    The window always resets at the first instant of the next calendar month,
    regardless of tier.
    """
    reset_at = next_month_start(now)
    ceiling = message_ceiling(tier)

    if ceiling == UNLIMITED:
        return QuotaDecision(allowed=True, remaining=UNLIMITED, limit=UNLIMITED, reset_at=reset_at)

    remaining = max(0, ceiling - messages_used)
    if messages_used >= ceiling:
        return QuotaDecision(
            allowed=False,
            remaining=0,
            limit=ceiling,
            reset_at=reset_at,
            reason=f"Monthly message limit reached ({ceiling} messages). Upgrade your plan for more.",
        )

    return QuotaDecision(allowed=True, remaining=remaining, limit=ceiling, reset_at=reset_at)


class UsageSummary(BaseModel):
    """Current-period usage as reported to the caller."""

    tier: SubscriptionTier
    messages_used: int
    tokens_used: int
    period_start: datetime
    period_end: datetime
    limit: int
    remaining: int
    usage_percentage: int
    near_limit: bool


def summarize_usage(tier: SubscriptionTier, record: UsagePeriodRecord) -> UsageSummary:
    ceiling = message_ceiling(tier)
    used = record.messages_count
    return UsageSummary(
        tier=tier,
        messages_used=used,
        tokens_used=record.tokens_used,
        period_start=record.period_start,
        period_end=record.period_end,
        limit=ceiling,
        remaining=UNLIMITED if ceiling == UNLIMITED else max(0, ceiling - used),
        usage_percentage=usage_percentage(used, ceiling),
        near_limit=is_near_limit(used, ceiling),
    )
