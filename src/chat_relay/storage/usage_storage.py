"""PostgreSQL usage ledger."""

from datetime import datetime
from typing import Optional

from ..models.usage import UsagePeriodRecord, current_period
from .database import Database


class PostgresUsageLedger:
    """Per-user, per-month message and token counters."""

    def __init__(self, database: Database):
        self.database = database

    async def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsagePeriodRecord:
        """Get the current period's counters; zeros when nothing was recorded yet."""
        period_start, period_end = current_period(now)

        async with self.database.connection() as conn:
            row = await conn.fetchrow("""
                SELECT messages_count, tokens_used FROM usage_records
                WHERE user_id = $1 AND period_start = $2
            """, user_id, period_start)

        return UsagePeriodRecord(
            user_id=user_id,
            messages_count=row["messages_count"] if row else 0,
            tokens_used=row["tokens_used"] if row else 0,
            period_start=period_start,
            period_end=period_end,
        )

    async def increment(self, user_id: str, tokens: int, now: Optional[datetime] = None) -> UsagePeriodRecord:
        """Add one message and ``tokens`` tokens in a single atomic upsert."""
        period_start, period_end = current_period(now)

        async with self.database.connection() as conn:
            row = await conn.fetchrow("""
                INSERT INTO usage_records
                (user_id, period_start, period_end, messages_count, tokens_used, updated_at)
                VALUES ($1, $2, $3, 1, $4, NOW())
                ON CONFLICT (user_id, period_start)
                DO UPDATE SET
                    messages_count = usage_records.messages_count + 1,
                    tokens_used = usage_records.tokens_used + EXCLUDED.tokens_used,
                    updated_at = NOW()
                RETURNING messages_count, tokens_used
            """, user_id, period_start, period_end, max(0, tokens))

        return UsagePeriodRecord(
            user_id=user_id,
            messages_count=row["messages_count"],
            tokens_used=row["tokens_used"],
            period_start=period_start,
            period_end=period_end,
        )
