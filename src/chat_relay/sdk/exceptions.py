"""Exceptions raised by the chat-relay client."""

from typing import Optional


class RelayClientError(Exception):
    """Base exception for client errors."""
    pass


class RelayConnectionError(RelayClientError):
    """Raised when connection to the relay fails."""
    pass


class RelayTimeoutError(RelayClientError):
    """Raised when a request times out."""
    pass


class RelayAPIError(RelayClientError):
    """Raised when the relay refuses a request before streaming."""

    def __init__(self, status_code: int, message: str, retry_after: Optional[int] = None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


class RelayProtocolError(RelayClientError):
    """Raised when the event stream ends without a terminal event."""
    pass


class RelayStreamError(RelayClientError):
    """Raised by ``chat()`` when the stream ends with an ``error`` event."""

    def __init__(self, message: str, partial_content: str = ""):
        super().__init__(message)
        self.message = message
        self.partial_content = partial_content
