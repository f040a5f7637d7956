"""Google Gemini adapter over the Generative Language REST API.

System turns move into ``systemInstruction`` and assistant turns are sent with the
``model`` role. The streaming endpoint answers with server-sent events; each event
carries a partial response and, usually, a cumulative ``usageMetadata`` snapshot.
"""

import json
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from ..errors import UpstreamProviderError, ValidationFailed
from ..models.chat import ConversationTurn, Role
from ..models.events import FailedEvent, StreamEvent
from ..models.usage import TokenUsage
from ..streaming.sse import SSEDecoder
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

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GeminiAPIError(Exception):
    """Error payload returned by the Gemini API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    return isinstance(error, GeminiAPIError) and (error.status_code == 429 or error.status_code >= 500)


def _error_from_body(status_code: int, body: bytes) -> GeminiAPIError:
    try:
        message = json.loads(body)["error"]["message"]
    except (ValueError, KeyError, TypeError):
        message = body.decode("utf-8", errors="replace")[:500] or "empty response"
    return GeminiAPIError(status_code, message)


def _usage_from_metadata(metadata: Dict[str, Any]) -> TokenUsage:
    return TokenUsage.from_counts(
        metadata.get("promptTokenCount"),
        metadata.get("candidatesTokenCount"),
        metadata.get("totalTokenCount"),
    )


def _parse_response(payload: Dict[str, Any]) -> List[Delta]:
    """Extract the text and usage carried by one (partial) GenerateContentResponse."""
    if "error" in payload:
        error = payload["error"] or {}
        raise GeminiAPIError(int(error.get("code") or 500), error.get("message") or "stream error")

    block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise GeminiAPIError(400, f"prompt blocked: {block_reason}")

    deltas: List[Delta] = []
    candidates = payload.get("candidates") or []
    if candidates:
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if text:
            deltas.append(text)

    metadata = payload.get("usageMetadata")
    if metadata:
        deltas.append(_usage_from_metadata(metadata))

    return deltas


class GeminiProvider:
    """Adapter for Gemini Pro, 1.5 and 2.0 models."""

    vendor = Vendor.GOOGLE

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = GEMINI_API_BASE,
    ):
        self.config = config
        self.client = client or self.create_client(config)
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def create_client(config: ProviderConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=config.timeout)

    @staticmethod
    async def close_client(client: httpx.AsyncClient) -> None:
        await client.aclose()

    def _payload(self, turns: Sequence[ConversationTurn]) -> Dict[str, Any]:
        system, conversation = split_system(turns)
        conversation = window_turns(conversation, self.config.max_history_turns)

        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if turn.role == Role.ASSISTANT else "user",
                    "parts": [{"text": turn.content}],
                }
                for turn in conversation
            ],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_tokens,
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    def _url(self, method: str) -> str:
        return f"{self.base_url}/models/{self.config.model}:{method}"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.config.api_key}

    async def stream_chat(self, turns: Sequence[ConversationTurn]) -> AsyncIterator[StreamEvent]:
        problem = check_prompt(turns)
        if problem:
            yield FailedEvent(problem)
            return

        async for event in normalize_stream(self.vendor, self._deltas(turns), self.config.idle_timeout):
            yield event

    async def _deltas(self, turns: Sequence[ConversationTurn]) -> AsyncGenerator[Delta, None]:
        async with self.client.stream(
            "POST",
            self._url("streamGenerateContent"),
            params={"alt": "sse"},
            headers=self._headers,
            json=self._payload(turns),
        ) as response:
            if response.status_code >= 400:
                raise _error_from_body(response.status_code, await response.aread())

            decoder = SSEDecoder(source="gemini")
            async for text in response.aiter_text():
                for payload in decoder.feed(text):
                    for delta in _parse_response(payload):
                        yield delta

            for payload in decoder.flush():
                for delta in _parse_response(payload):
                    yield delta

    async def _generate(self, turns: Sequence[ConversationTurn]) -> Dict[str, Any]:
        response = await self.client.post(
            self._url("generateContent"),
            headers=self._headers,
            json=self._payload(turns),
        )
        if response.status_code >= 400:
            raise _error_from_body(response.status_code, response.content)
        return response.json()

    async def chat(self, turns: Sequence[ConversationTurn]) -> ChatResult:
        problem = check_prompt(turns)
        if problem:
            raise ValidationFailed(problem)

        try:
            payload = await call_with_retry(lambda: self._generate(turns), _is_transient)
            deltas = _parse_response(payload)
        except (httpx.HTTPError, GeminiAPIError, ValueError) as e:
            raise UpstreamProviderError(f"google: {type(e).__name__}: {e}") from e

        content = "".join(delta for delta in deltas if isinstance(delta, str))
        usage = next((delta for delta in reversed(deltas) if isinstance(delta, TokenUsage)), TokenUsage())

        return ChatResult(content=content, usage=usage)
