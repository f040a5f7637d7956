"""chat-relay - streaming multi-provider chat completion relay."""

__version__ = "0.1.0"

from .sdk import ChatReply, RelayClient, RelayEvent

__all__ = [
    "RelayClient",
    "RelayEvent",
    "ChatReply",
]
