"""Conversation models and the relay request schema."""

from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

MAX_TURNS = 100
MAX_TURN_CHARS = 32000


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ModelId(str, Enum):
    """Every model identifier the relay accepts."""

    GPT_35_TURBO = "gpt-3.5-turbo"
    GPT_4 = "gpt-4"
    GPT_4_TURBO = "gpt-4-turbo"
    GPT_4O = "gpt-4o"
    CLAUDE_3_HAIKU = "claude-3-haiku-20240307"
    CLAUDE_3_SONNET = "claude-3-sonnet-20240229"
    CLAUDE_3_OPUS = "claude-3-opus-20240229"
    CLAUDE_35_SONNET = "claude-3-5-sonnet-20241022"
    GEMINI_PRO = "gemini-pro"
    GEMINI_15_PRO = "gemini-1.5-pro"
    GEMINI_15_FLASH = "gemini-1.5-flash"
    GEMINI_20_FLASH = "gemini-2.0-flash"


class ConversationTurn(BaseModel):
    """One immutable message in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ChatMessage(BaseModel):
    """A turn as received on the wire."""

    role: Role
    content: str = Field(..., min_length=1, max_length=MAX_TURN_CHARS)

    def to_turn(self) -> ConversationTurn:
        return ConversationTurn(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    """Request body for ``POST /api/chat``."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(..., min_length=1, max_length=MAX_TURNS)
    model: ModelId
    conversation_id: Optional[UUID] = Field(
        default=None,
        validation_alias=AliasChoices("conversationId", "chatId", "conversation_id"),
    )
    stream: bool = True


class GenerationRequest(BaseModel):
    """A validated request, owned by the orchestrator for one HTTP call."""

    model_config = ConfigDict(frozen=True)

    turns: Tuple[ConversationTurn, ...]
    model_id: ModelId
    conversation_id: Optional[UUID] = None
    stream: bool = True

    @classmethod
    def from_chat_request(cls, body: ChatRequest) -> "GenerationRequest":
        return cls(
            turns=tuple(message.to_turn() for message in body.messages),
            model_id=body.model,
            conversation_id=body.conversation_id,
            stream=body.stream,
        )


def describe_validation_error(exc: ValidationError) -> str:
    """Render pydantic errors as ``"field.path: message"`` joined with ``"; "``."""
    violations = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "body"
        violations.append(f"{location}: {error['msg']}")
    return "; ".join(violations)
