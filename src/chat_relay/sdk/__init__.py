"""Python client for the chat relay."""

from .client import ChatReply, RelayClient, RelayEvent
from .exceptions import (
    RelayAPIError,
    RelayClientError,
    RelayConnectionError,
    RelayProtocolError,
    RelayStreamError,
    RelayTimeoutError,
)

__all__ = [
    "ChatReply",
    "RelayClient",
    "RelayEvent",
    "RelayAPIError",
    "RelayClientError",
    "RelayConnectionError",
    "RelayProtocolError",
    "RelayStreamError",
    "RelayTimeoutError",
]
