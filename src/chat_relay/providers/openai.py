"""OpenAI chat completions adapter.

System turns stay inline in the message list. Usage arrives in-band on the final
stream chunk when ``stream_options.include_usage`` is requested.
"""

from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import UpstreamProviderError, ValidationFailed
from ..models.chat import ConversationTurn, Role
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
    window_turns,
)

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIProvider:
    """Adapter for GPT-3.5, GPT-4 and GPT-4o models."""

    vendor = Vendor.OPENAI

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.client = client or self.create_client(config)

    @staticmethod
    def create_client(config: ProviderConfig) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=config.api_key, timeout=config.timeout, max_retries=0)

    @staticmethod
    async def close_client(client: AsyncOpenAI) -> None:
        await client.close()

    def _messages(self, turns: Sequence[ConversationTurn]) -> List[Dict[str, str]]:
        if self.config.max_history_turns is None:
            return [{"role": turn.role.value, "content": turn.content} for turn in turns]

        system = [turn for turn in turns if turn.role == Role.SYSTEM]
        conversation = window_turns(
            [turn for turn in turns if turn.role != Role.SYSTEM],
            self.config.max_history_turns,
        )
        return [{"role": turn.role.value, "content": turn.content} for turn in system + conversation]

    def _request(self, turns: Sequence[ConversationTurn]) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": self._messages(turns),
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    async def stream_chat(self, turns: Sequence[ConversationTurn]) -> AsyncIterator[StreamEvent]:
        problem = check_prompt(turns)
        if problem:
            yield FailedEvent(problem)
            return

        async for event in normalize_stream(self.vendor, self._deltas(turns), self.config.idle_timeout):
            yield event

    async def _deltas(self, turns: Sequence[ConversationTurn]) -> AsyncGenerator[Delta, None]:
        stream = await self.client.chat.completions.create(
            **self._request(turns),
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                if chunk.choices:
                    content = chunk.choices[0].delta.content
                    if content:
                        yield content

                if chunk.usage:
                    yield TokenUsage.from_counts(
                        chunk.usage.prompt_tokens,
                        chunk.usage.completion_tokens,
                        chunk.usage.total_tokens,
                    )
        finally:
            await stream.close()

    async def chat(self, turns: Sequence[ConversationTurn]) -> ChatResult:
        problem = check_prompt(turns)
        if problem:
            raise ValidationFailed(problem)

        try:
            response = await call_with_retry(
                lambda: self.client.chat.completions.create(**self._request(turns)),
                lambda e: isinstance(e, TRANSIENT_ERRORS),
            )
        except openai.OpenAIError as e:
            raise UpstreamProviderError(f"openai: {type(e).__name__}: {e}") from e

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage.from_counts(
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
                response.usage.total_tokens,
            )

        return ChatResult(content=content, usage=usage)
