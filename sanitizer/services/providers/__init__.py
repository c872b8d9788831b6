"""Provider registry."""
from typing import Any

from sanitizer.core.models import ProviderSettings
from .base import Provider
from .llama_local import LlamaCppProvider, LlamaRuntime
from .openai_compat import OpenAICompatibleProvider

# All registered providers, keyed by id
PROVIDERS: dict[str, type[Provider]] = {
    OpenAICompatibleProvider.id: OpenAICompatibleProvider,
    LlamaCppProvider.id: LlamaCppProvider,
}

DEFAULT_PROVIDER = OpenAICompatibleProvider.id


def get_provider_class(provider_id: str) -> type[Provider]:
    """
    Look up a provider class by id.

    Raises:
        ValueError: If the id is not registered
    """
    provider_cls = PROVIDERS.get(provider_id)
    if provider_cls is None:
        raise ValueError(
            f'Unknown provider: "{provider_id}". Available: {", ".join(PROVIDERS)}'
        )
    return provider_cls


def create_provider(
    provider_id: str,
    settings: ProviderSettings | None = None,
    **kwargs: Any,
) -> Provider:
    """Create a provider instance by id; extra kwargs go to the constructor."""
    return get_provider_class(provider_id)(settings, **kwargs)


__all__ = [
    "DEFAULT_PROVIDER",
    "PROVIDERS",
    "LlamaCppProvider",
    "LlamaRuntime",
    "OpenAICompatibleProvider",
    "Provider",
    "create_provider",
    "get_provider_class",
]
