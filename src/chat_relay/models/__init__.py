"""Data models for the chat relay."""

from .chat import (
    ChatMessage,
    ChatRequest,
    ConversationTurn,
    GenerationRequest,
    ModelId,
    Role,
)
from .events import CompletedEvent, FailedEvent, StreamEvent, TokenEvent, is_terminal
from .usage import TokenUsage, UsagePeriodRecord, current_period, next_month_start

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ConversationTurn",
    "GenerationRequest",
    "ModelId",
    "Role",
    "CompletedEvent",
    "FailedEvent",
    "StreamEvent",
    "TokenEvent",
    "is_terminal",
    "TokenUsage",
    "UsagePeriodRecord",
    "current_period",
    "next_month_start",
]
