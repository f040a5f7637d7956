# Storage package

from datetime import datetime
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from ..billing.tiers import SubscriptionTier
from ..models.usage import UsagePeriodRecord
from .database import Database
from .inmemory import InMemoryMessageStore, InMemoryProfileStore, InMemoryUsageLedger
from .message_storage import PostgresMessageStore
from .profile_storage import PostgresProfileStore
from .usage_storage import PostgresUsageLedger


class UsageLedger(Protocol):
    async def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsagePeriodRecord:
        ...

    async def increment(self, user_id: str, tokens: int, now: Optional[datetime] = None) -> UsagePeriodRecord:
        ...


class MessageStore(Protocol):
    async def insert_message(
        self,
        conversation_id: UUID,
        user_id: str,
        content: str,
        tokens_used: int,
        model: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...

    async def touch_conversation(self, conversation_id: UUID, user_id: str) -> None:
        ...


class ProfileStore(Protocol):
    async def get_tier(self, user_id: str) -> SubscriptionTier:
        ...


__all__ = [
    "Database",
    "InMemoryMessageStore",
    "InMemoryProfileStore",
    "InMemoryUsageLedger",
    "MessageStore",
    "PostgresMessageStore",
    "PostgresProfileStore",
    "PostgresUsageLedger",
    "ProfileStore",
    "UsageLedger",
]
