"""Upstream model provider adapters."""

from .anthropic import AnthropicProvider
from .base import ChatProvider, ChatResult, ProviderConfig, Vendor, normalize_stream
from .factory import MODEL_FAMILIES, ProviderFactory, resolve_vendor
from .gemini import GeminiProvider
from .openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "ChatProvider",
    "ChatResult",
    "GeminiProvider",
    "MODEL_FAMILIES",
    "OpenAIProvider",
    "ProviderConfig",
    "ProviderFactory",
    "Vendor",
    "normalize_stream",
    "resolve_vendor",
]
