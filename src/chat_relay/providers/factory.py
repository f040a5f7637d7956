"""Provider factory: model id → vendor → configured adapter."""

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..config.settings import Settings
from ..errors import MissingCredential, UnknownModel
from ..logging import get_logger
from .anthropic import AnthropicProvider
from .base import ChatProvider, ProviderConfig, Vendor
from .gemini import GeminiProvider
from .openai import OpenAIProvider

logger = get_logger(__name__)

MODEL_FAMILIES: Dict[Vendor, Tuple[str, ...]] = {
    Vendor.OPENAI: ("gpt", "o1", "o3"),
    Vendor.ANTHROPIC: ("claude",),
    Vendor.GOOGLE: ("gemini",),
}

PROVIDER_CLASSES = {
    Vendor.OPENAI: OpenAIProvider,
    Vendor.ANTHROPIC: AnthropicProvider,
    Vendor.GOOGLE: GeminiProvider,
}

ProviderBuilder = Callable[[ProviderConfig], ChatProvider]


def resolve_vendor(model_id: str) -> Vendor:
    """Map a model identifier to its vendor by case-insensitive family prefix."""
    name = str(getattr(model_id, "value", model_id)).strip().lower()
    if name:
        for vendor, prefixes in MODEL_FAMILIES.items():
            if name.startswith(prefixes):
                return vendor
    raise UnknownModel(name or repr(model_id))


class ProviderFactory:
    """Build provider adapters from settings.

    Vendor SDK clients are created lazily and shared between requests; ``aclose``
    releases them. ``builders`` replaces construction for a vendor entirely and is
    how tests inject fake adapters.
    """

    def __init__(self, settings: Settings, builders: Optional[Mapping[Vendor, ProviderBuilder]] = None):
        self.settings = settings
        self.builders = dict(builders or {})
        self._clients: Dict[Vendor, Any] = {}

    def _credential(self, vendor: Vendor) -> Optional[str]:
        key = {
            Vendor.OPENAI: self.settings.openai_api_key,
            Vendor.ANTHROPIC: self.settings.anthropic_api_key,
            Vendor.GOOGLE: self.settings.google_api_key,
        }[vendor]
        return key if key and key.strip() else None

    def credential_for(self, vendor: Vendor) -> str:
        key = self._credential(vendor)
        if key is None:
            logger.error("provider_credential_missing", vendor=vendor.value)
            raise MissingCredential(vendor.value)
        return key

    def configured_vendors(self) -> List[str]:
        return [vendor.value for vendor in Vendor if self._credential(vendor)]

    def provider_config(self, vendor: Vendor, model: str) -> ProviderConfig:
        history = {
            Vendor.OPENAI: self.settings.openai_max_history_turns,
            Vendor.ANTHROPIC: self.settings.anthropic_max_history_turns,
            Vendor.GOOGLE: self.settings.gemini_max_history_turns,
        }[vendor]
        return ProviderConfig(
            api_key=self.credential_for(vendor),
            model=model,
            temperature=self.settings.default_temperature,
            max_tokens=self.settings.default_max_tokens,
            timeout=self.settings.provider_timeout_seconds,
            idle_timeout=self.settings.provider_idle_timeout_seconds,
            max_history_turns=history,
        )

    def create_provider(self, vendor: Vendor, model: str) -> ChatProvider:
        """Construct an adapter; fails with ``MissingCredential`` before any network activity."""
        config = self.provider_config(vendor, model)

        builder = self.builders.get(vendor)
        if builder is not None:
            return builder(config)

        provider_class = PROVIDER_CLASSES[vendor]
        client = self._clients.get(vendor)
        if client is None:
            client = provider_class.create_client(config)
            self._clients[vendor] = client
        return provider_class(config, client=client)

    def for_model(self, model_id: str) -> ChatProvider:
        model = str(getattr(model_id, "value", model_id))
        return self.create_provider(resolve_vendor(model), model)

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for vendor, client in clients.items():
            await PROVIDER_CLASSES[vendor].close_client(client)
