"""Provider capability and the helpers every vendor adapter is composed from.

An adapter exposes two operations:

- ``stream_chat(turns)``: an async generator of normalized ``StreamEvent`` values.
  It never raises; every failure becomes a single ``FailedEvent`` and nothing is
  yielded after it.
- ``chat(turns)``: a non-streaming completion returning ``ChatResult``.

Vendor modules only translate turns into their wire format and turn the vendor's
stream into an async iterator of text deltas and ``TokenUsage`` snapshots;
``normalize_stream`` does accumulation, termination and cleanup for all of them.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import (
    AsyncGenerator,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..models.chat import ConversationTurn, Role
from ..models.events import CompletedEvent, FailedEvent, StreamEvent, TokenEvent
from ..models.usage import TokenUsage

T = TypeVar("T")

Delta = Union[str, TokenUsage]

_END = object()

INVALID_PROMPT_MESSAGE = "Conversation must end with a non-empty user message"


class Vendor(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout: float = 60.0
    idle_timeout: Optional[float] = 30.0
    max_history_turns: Optional[int] = None


@dataclass(frozen=True)
class ChatResult:
    content: str
    usage: TokenUsage


class ChatProvider(Protocol):
    vendor: Vendor
    config: ProviderConfig

    def stream_chat(self, turns: Sequence[ConversationTurn]) -> AsyncIterator[StreamEvent]:
        ...

    async def chat(self, turns: Sequence[ConversationTurn]) -> ChatResult:
        ...


def check_prompt(turns: Sequence[ConversationTurn]) -> Optional[str]:
    """Return a problem description unless the conversation, ignoring system turns,
    ends with a non-empty user turn."""
    conversation = [turn for turn in turns if turn.role != Role.SYSTEM]
    if not conversation:
        return INVALID_PROMPT_MESSAGE
    last = conversation[-1]
    if last.role != Role.USER or not last.content.strip():
        return INVALID_PROMPT_MESSAGE
    return None


def split_system(turns: Sequence[ConversationTurn]) -> Tuple[Optional[str], List[ConversationTurn]]:
    """Separate system instructions from the user/assistant exchange."""
    system_parts = [turn.content for turn in turns if turn.role == Role.SYSTEM and turn.content.strip()]
    conversation = [turn for turn in turns if turn.role != Role.SYSTEM]
    return ("\n\n".join(system_parts) or None), conversation


def window_turns(turns: Sequence[ConversationTurn], max_turns: Optional[int]) -> List[ConversationTurn]:
    """Keep at most the last ``max_turns`` turns; a window always opens on a user turn."""
    if max_turns is None or len(turns) <= max_turns:
        return list(turns)

    window = list(turns[-max(1, max_turns):])
    while len(window) > 1 and window[0].role != Role.USER:
        window.pop(0)
    return window


async def normalize_stream(
    vendor: Vendor,
    deltas: AsyncGenerator[Delta, None],
    idle_timeout: Optional[float] = None,
) -> AsyncIterator[StreamEvent]:
    """Turn a vendor delta iterator into ``Token* (Completed | Failed)``.

    Text deltas are forwarded as they arrive and concatenated for the completion
    event. The last ``TokenUsage`` snapshot seen wins. ``deltas`` is closed on every
    exit path, including when the consumer stops iterating early.
    """
    parts: List[str] = []
    usage = TokenUsage()

    try:
        while True:
            try:
                if idle_timeout is None:
                    item = await anext(deltas, _END)
                else:
                    item = await asyncio.wait_for(anext(deltas, _END), idle_timeout)
            except asyncio.TimeoutError as e:
                yield FailedEvent(f"{vendor.value}: no data received for {idle_timeout}s", exception=e)
                return
            except Exception as e:
                yield FailedEvent(f"{vendor.value}: {type(e).__name__}: {e}", exception=e)
                return

            if item is _END:
                break
            if isinstance(item, TokenUsage):
                usage = item
                continue
            if item:
                parts.append(item)
                yield TokenEvent(item)
    finally:
        await deltas.aclose()

    yield CompletedEvent(content="".join(parts), usage=usage)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    is_transient: Callable[[BaseException], bool],
    attempts: int = 3,
) -> T:
    """Run ``operation``, retrying transient vendor failures with exponential backoff."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception(is_transient),
        reraise=True,
    ):
        with attempt:
            return await operation()
    raise AssertionError("unreachable")
