"""Anthropic messages adapter.

System turns move into the separate ``system`` field. Usage is only known once the
stream has finished, from the final message.
"""

from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional, Sequence

import anthropic
from anthropic import AsyncAnthropic

from ..errors import UpstreamProviderError, ValidationFailed
from ..models.chat import ConversationTurn
from ..models.events import FailedEvent, StreamEvent
from ..models.usage import TokenUsage
from .base import (
    ChatResult,
    Delta,
    ProviderConfig,
    Vendor,
    call_with_retry,
    check_prompt,
    normalize_stream,
    split_system,
    window_turns,
)

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class AnthropicProvider:
    """Adapter for Claude 3 and 3.5 models."""

    vendor = Vendor.ANTHROPIC

    def __init__(self, config: ProviderConfig, client: Optional[AsyncAnthropic] = None):
        self.config = config
        self.client = client or self.create_client(config)

    @staticmethod
    def create_client(config: ProviderConfig) -> AsyncAnthropic:
        return AsyncAnthropic(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    @staticmethod
    async def close_client(client: AsyncAnthropic) -> None:
        await client.close()

    def _request(self, turns: Sequence[ConversationTurn]) -> Dict[str, Any]:
        system, conversation = split_system(turns)
        conversation = window_turns(conversation, self.config.max_history_turns)

        request: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": turn.role.value, "content": turn.content} for turn in conversation],
        }
        if system:
            request["system"] = system
        return request

    async def stream_chat(self, turns: Sequence[ConversationTurn]) -> AsyncIterator[StreamEvent]:
        problem = check_prompt(turns)
        if problem:
            yield FailedEvent(problem)
            return

        async for event in normalize_stream(self.vendor, self._deltas(turns), self.config.idle_timeout):
            yield event

    async def _deltas(self, turns: Sequence[ConversationTurn]) -> AsyncGenerator[Delta, None]:
        async with self.client.messages.stream(**self._request(turns)) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text

            final_message = await stream.get_final_message()

        yield TokenUsage.from_counts(
            final_message.usage.input_tokens,
            final_message.usage.output_tokens,
        )

    async def chat(self, turns: Sequence[ConversationTurn]) -> ChatResult:
        problem = check_prompt(turns)
        if problem:
            raise ValidationFailed(problem)

        try:
            response = await call_with_retry(
                lambda: self.client.messages.create(**self._request(turns)),
                lambda e: isinstance(e, TRANSIENT_ERRORS),
            )
        except anthropic.AnthropicError as e:
            raise UpstreamProviderError(f"anthropic: {type(e).__name__}: {e}") from e

        content = "".join(block.text for block in response.content if block.type == "text")
        usage = TokenUsage.from_counts(response.usage.input_tokens, response.usage.output_tokens)

        return ChatResult(content=content, usage=usage)
