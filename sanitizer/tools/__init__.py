"""Tools the model may call during generation."""
from .web_search import (
    SEARCH_PROVIDERS,
    SEARCH_SETTINGS_KEYS,
    SearchMatch,
    SearchProvider,
    create_web_search_tool,
    resolve_search_provider,
)

__all__ = [
    "SEARCH_PROVIDERS",
    "SEARCH_SETTINGS_KEYS",
    "SearchMatch",
    "SearchProvider",
    "create_web_search_tool",
    "resolve_search_provider",
]
