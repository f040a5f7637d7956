"""PostgreSQL subscription tier lookup."""

from ..billing.tiers import SubscriptionTier, parse_tier
from .database import Database


class PostgresProfileStore:
    def __init__(self, database: Database):
        self.database = database

    async def get_tier(self, user_id: str) -> SubscriptionTier:
        """Tier for ``user_id``; a missing profile or unknown value is the free tier."""
        async with self.database.connection() as conn:
            value = await conn.fetchval("""
                SELECT subscription_tier FROM profiles WHERE id = $1
            """, user_id)

        return parse_tier(value)
