"""In-process stores for single-instance development and tests."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from ..billing.tiers import SubscriptionTier, parse_tier
from ..errors import PersistenceFailed
from ..models.usage import UsagePeriodRecord, current_period


class InMemoryUsageLedger:
    def __init__(self):
        self._records: Dict[Tuple[str, datetime], UsagePeriodRecord] = {}
        self._lock = asyncio.Lock()

    async def get_usage(self, user_id: str, now: Optional[datetime] = None) -> UsagePeriodRecord:
        period_start, period_end = current_period(now)
        record = self._records.get((user_id, period_start))
        if record is None:
            return UsagePeriodRecord(user_id=user_id, period_start=period_start, period_end=period_end)
        return record.model_copy()

    async def increment(self, user_id: str, tokens: int, now: Optional[datetime] = None) -> UsagePeriodRecord:
        period_start, period_end = current_period(now)
        async with self._lock:
            record = self._records.get((user_id, period_start))
            if record is None:
                record = UsagePeriodRecord(user_id=user_id, period_start=period_start, period_end=period_end)
            record = record.model_copy(update={
                "messages_count": record.messages_count + 1,
                "tokens_used": record.tokens_used + max(0, tokens),
            })
            self._records[(user_id, period_start)] = record
        return record.model_copy()

    def set_usage(self, user_id: str, messages_count: int, tokens_used: int = 0,
                  now: Optional[datetime] = None) -> None:
        """Seed the counters for the period containing ``now``."""
        period_start, period_end = current_period(now)
        self._records[(user_id, period_start)] = UsagePeriodRecord(
            user_id=user_id,
            messages_count=messages_count,
            tokens_used=tokens_used,
            period_start=period_start,
            period_end=period_end,
        )


@dataclass
class StoredMessage:
    conversation_id: UUID
    content: str
    tokens_used: int
    model: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    role: str = "assistant"


class InMemoryMessageStore:
    def __init__(self):
        self.conversations: Dict[UUID, str] = {}
        self.messages: List[StoredMessage] = []
        self.touched: Dict[UUID, datetime] = {}

    def add_conversation(self, conversation_id: UUID, user_id: str) -> None:
        self.conversations[conversation_id] = user_id

    async def insert_message(
        self,
        conversation_id: UUID,
        user_id: str,
        content: str,
        tokens_used: int,
        model: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        if self.conversations.get(conversation_id) != user_id:
            raise PersistenceFailed(f"conversation {conversation_id} not found for caller")
        self.messages.append(StoredMessage(conversation_id, content, tokens_used, model, dict(metadata or {})))
        return len(self.messages)

    async def touch_conversation(self, conversation_id: UUID, user_id: str) -> None:
        if self.conversations.get(conversation_id) == user_id:
            self.touched[conversation_id] = datetime.now()


class InMemoryProfileStore:
    def __init__(self, tiers: Optional[Dict[str, Union[str, SubscriptionTier]]] = None):
        self.tiers = dict(tiers or {})

    async def get_tier(self, user_id: str) -> SubscriptionTier:
        return parse_tier(self.tiers.get(user_id))

    def set_tier(self, user_id: str, tier: Union[str, SubscriptionTier]) -> None:
        self.tiers[user_id] = tier
