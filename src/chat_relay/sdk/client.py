"""Async Python client for the relay endpoint."""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Union
from uuid import UUID

import httpx
from pydantic import ValidationError

from .. import __version__
from ..models.usage import TokenUsage
from ..streaming.sse import SSEDecoder
from .exceptions import (
    RelayAPIError,
    RelayConnectionError,
    RelayProtocolError,
    RelayStreamError,
    RelayTimeoutError,
)


@dataclass(frozen=True)
class RelayEvent:
    """One decoded event: ``token``, ``done`` or ``error``."""

    type: str
    token: Optional[str] = None
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["RelayEvent"]:
        """Build an event from a decoded ``data:`` payload; unknown shapes give None."""
        if "token" in payload:
            return cls(type="token", token=str(payload["token"]))
        if payload.get("done"):
            try:
                usage = TokenUsage.model_validate(payload.get("usage") or {})
            except ValidationError:
                return None
            return cls(type="done", usage=usage)
        if "error" in payload:
            return cls(type="error", error=str(payload["error"]))
        return None


@dataclass(frozen=True)
class ChatReply:
    content: str
    usage: TokenUsage


Message = Union[Mapping[str, str], Any]


class RelayClient:
    """Client for ``POST /api/chat``.

    Example:
        async with RelayClient("http://localhost:8000", access_token=token) as client:
            async for event in client.stream_chat([{"role": "user", "content": "Hi"}], "gpt-4o"):
                if event.type == "token":
                    print(event.token, end="")
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": f"chat-relay-sdk/{__version__}"},
        )

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    @staticmethod
    def _payload(
        messages: Iterable[Message],
        model: str,
        conversation_id: Optional[Union[str, UUID]],
        stream: bool,
    ) -> Dict[str, Any]:
        turns: List[Dict[str, str]] = []
        for message in messages:
            if isinstance(message, Mapping):
                role, content = message["role"], message["content"]
            else:
                role, content = message.role, message.content
            turns.append({"role": str(getattr(role, "value", role)), "content": content})

        payload: Dict[str, Any] = {
            "messages": turns,
            "model": str(getattr(model, "value", model)),
            "stream": stream,
        }
        if conversation_id is not None:
            payload["conversationId"] = str(conversation_id)
        return payload

    @staticmethod
    def _api_error(response: httpx.Response) -> RelayAPIError:
        try:
            body = response.json()
        except ValueError:
            body = None

        message = body.get("error") if isinstance(body, dict) else None
        if not message:
            message = response.text or response.reason_phrase

        retry_after = response.headers.get("Retry-After")
        return RelayAPIError(
            response.status_code,
            message,
            int(retry_after) if retry_after and retry_after.isdigit() else None,
        )

    async def stream_chat(
        self,
        messages: Iterable[Message],
        model: str,
        conversation_id: Optional[Union[str, UUID]] = None,
    ) -> AsyncIterator[RelayEvent]:
        """Yield events as they arrive, stopping after the terminal event.

        Raises:
            RelayAPIError: The relay refused the request (non-200 status).
            RelayProtocolError: The stream ended without ``done`` or ``error``.
        """
        payload = self._payload(messages, model, conversation_id, stream=True)

        try:
            async with self._client.stream("POST", "/api/chat", json=payload, headers=self._headers()) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise self._api_error(response)

                decoder = SSEDecoder(source="relay")
                async for chunk in response.aiter_text():
                    for data in decoder.feed(chunk):
                        event = RelayEvent.from_payload(data)
                        if event is None:
                            continue
                        yield event
                        if event.is_terminal:
                            return

                for data in decoder.flush():
                    event = RelayEvent.from_payload(data)
                    if event is None:
                        continue
                    yield event
                    if event.is_terminal:
                        return

        except httpx.TimeoutException as e:
            raise RelayTimeoutError(f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise RelayConnectionError(f"Failed to connect to relay: {self.base_url}") from e

        raise RelayProtocolError("stream ended without a terminal event")

    async def chat(
        self,
        messages: Iterable[Message],
        model: str,
        conversation_id: Optional[Union[str, UUID]] = None,
    ) -> ChatReply:
        """Collect a streamed reply.

        Raises:
            RelayStreamError: The stream ended with an ``error`` event.
        """
        parts: List[str] = []
        async for event in self.stream_chat(messages, model, conversation_id):
            if event.type == "token":
                parts.append(event.token)
            elif event.type == "error":
                raise RelayStreamError(event.error, partial_content="".join(parts))
            else:
                return ChatReply(content="".join(parts), usage=event.usage)

        raise RelayProtocolError("stream ended without a terminal event")
