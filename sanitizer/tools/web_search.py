"""Web search tool for fact-checking during generation."""
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, Field

from sanitizer.core.models import Tool

logger = logging.getLogger(__name__)

MAX_RESULTS = 5
SEARCH_TIMEOUT = 15.0
NO_RESULTS = "No results found."


@dataclass(frozen=True)
class SearchProvider:
    """A web search API the tool can use."""
    id: str
    label: str
    settings_key: str
    free_quota: str
    docs_url: str
    extra_keys: tuple[str, ...] = field(default_factory=tuple)


# Ordered by priority; the first provider with a configured key wins
SEARCH_PROVIDERS = (
    SearchProvider("brave", "Brave Search", "searchKeyBrave", "2 000 req/month", "https://brave.com/search/api/"),
    SearchProvider("tavily", "Tavily", "searchKeyTavily", "1 000 req/month", "https://tavily.com/"),
    SearchProvider("serpapi", "SerpAPI", "searchKeySerpapi", "100 req/month", "https://serpapi.com/"),
    SearchProvider(
        "google",
        "Google Custom Search",
        "searchKeyGoogle",
        "100 req/day",
        "https://developers.google.com/custom-search/v1/overview",
        extra_keys=("searchGoogleCx",),
    ),
)

# All settings keys used by search providers
SEARCH_SETTINGS_KEYS = tuple(
    key for p in SEARCH_PROVIDERS for key in (p.settings_key, *p.extra_keys)
)


@dataclass(frozen=True)
class SearchMatch:
    """Resolved search provider with its credentials."""
    provider: SearchProvider
    api_key: str
    extra: dict = field(default_factory=dict)


class WebSearchArgs(BaseModel):
    query: str = Field(description="Search query to look up")


def resolve_search_provider(settings: dict) -> Optional[SearchMatch]:
    """Return the first provider whose key (and extra keys) are configured."""
    for provider in SEARCH_PROVIDERS:
        api_key = settings.get(provider.settings_key)
        if not api_key:
            continue
        extra = {key: settings.get(key) for key in provider.extra_keys}
        if not all(extra.values()):
            continue
        return SearchMatch(provider=provider, api_key=api_key, extra=extra)
    return None


def _format_results(results: list[dict], title: str, snippet: str, url: str) -> str:
    return "\n\n".join(
        f"{i + 1}. {r.get(title, '')}\n   {r.get(snippet) or ''}\n   {r.get(url, '')}"
        for i, r in enumerate(results[:MAX_RESULTS])
    )


def _raise_for_status(response: httpx.Response, name: str) -> None:
    if response.is_error:
        raise RuntimeError(f"{name} {response.status_code}: {response.reason_phrase}")


async def search_brave(client: httpx.AsyncClient, query: str, api_key: str, extra: dict) -> str:
    response = await client.get(
        "https://api.search.brave.com/res/v1/web/search",
        params={"q": query, "count": str(MAX_RESULTS)},
        headers={"Accept": "application/json", "X-Subscription-Token": api_key},
    )
    _raise_for_status(response, "Brave API")
    results = (response.json().get("web") or {}).get("results") or []
    if not results:
        return NO_RESULTS
    return _format_results(results, "title", "description", "url")


async def search_tavily(client: httpx.AsyncClient, query: str, api_key: str, extra: dict) -> str:
    response = await client.post(
        "https://api.tavily.com/search",
        json={
            "api_key": api_key,
            "query": query,
            "max_results": MAX_RESULTS,
            "include_answer": True,
        },
    )
    _raise_for_status(response, "Tavily API")
    data = response.json()

    parts = []
    if data.get("answer"):
        parts.append(f"Summary: {data['answer']}")
    results = [
        {**r, "content": (r.get("content") or "")[:200]}
        for r in data.get("results") or []
    ]
    if results:
        parts.append(_format_results(results, "title", "content", "url"))
    return "\n\n".join(parts) or NO_RESULTS


async def search_serpapi(client: httpx.AsyncClient, query: str, api_key: str, extra: dict) -> str:
    response = await client.get(
        "https://serpapi.com/search.json",
        params={"q": query, "api_key": api_key, "num": str(MAX_RESULTS)},
    )
    _raise_for_status(response, "SerpAPI")
    results = response.json().get("organic_results") or []
    if not results:
        return NO_RESULTS
    return _format_results(results, "title", "snippet", "link")


async def search_google(client: httpx.AsyncClient, query: str, api_key: str, extra: dict) -> str:
    cx = extra.get("searchGoogleCx")
    if not cx:
        raise RuntimeError("Google Custom Search Engine ID (cx) is not configured.")

    response = await client.get(
        "https://www.googleapis.com/customsearch/v1",
        params={"q": query, "key": api_key, "cx": cx, "num": str(MAX_RESULTS)},
    )
    _raise_for_status(response, "Google CSE")
    results = response.json().get("items") or []
    if not results:
        return NO_RESULTS
    return _format_results(results, "title", "snippet", "link")


SearchFunction = Callable[[httpx.AsyncClient, str, str, dict], Awaitable[str]]

SEARCH_FUNCTIONS: dict[str, SearchFunction] = {
    "brave": search_brave,
    "tavily": search_tavily,
    "serpapi": search_serpapi,
    "google": search_google,
}


def create_web_search_tool(
    provider_id: str,
    api_key: str,
    extra: dict | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Tool:
    """
    Create the ``web_search`` tool for one search provider.

    Search failures are returned to the model as text instead of raised,
    so one failed lookup does not abort the whole session.

    Raises:
        ValueError: If the provider id is unknown
    """
    search_fn = SEARCH_FUNCTIONS.get(provider_id)
    if search_fn is None:
        raise ValueError(f"Unknown search provider: {provider_id}")
    extra = extra or {}

    async def execute(args: WebSearchArgs) -> str:
        logger.info("Web search via %s", provider_id)
        try:
            async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT, transport=transport) as client:
                return await search_fn(client, args.query, api_key, extra)
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            logger.warning("Web search via %s failed: %s", provider_id, e)
            return f"Search failed: {e}"

    return Tool(
        name="web_search",
        description=(
            "Search the web to verify claims, check facts, or find current information about a topic. "
            "Use this when the article makes claims that should be verified against external sources."
        ),
        parameters=WebSearchArgs,
        execute=execute,
    )
