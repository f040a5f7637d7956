"""Usage models for token accounting and the usage ledger."""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from pydantic import BaseModel, Field


class TokenUsage(BaseModel):
    """Normalized token accounting for one generation.

    When a vendor only reports a total, the granular fields stay 0 and only
    ``total_tokens`` is meaningful.
    """

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def from_counts(
        cls,
        prompt: Optional[int] = None,
        completion: Optional[int] = None,
        total: Optional[int] = None,
    ) -> "TokenUsage":
        prompt = prompt or 0
        completion = completion or 0
        if total is None:
            total = prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class UsagePeriodRecord(BaseModel):
    """Per-user, per-calendar-month usage counters."""

    user_id: str
    messages_count: int = 0
    tokens_used: int = 0
    period_start: datetime
    period_end: datetime


def current_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return the first and last instant (to the second) of the month containing ``now``."""
    now = now or datetime.now()
    period_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_start = next_month_start(now)
    return period_start, next_start - timedelta(seconds=1)


def next_month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the calendar month after ``now``."""
    now = now or datetime.now()
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
