"""Event-stream wire codec."""

from .sse import SSEDecoder, encode_event

__all__ = ["SSEDecoder", "encode_event"]
