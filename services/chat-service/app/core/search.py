from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx

from app.core.models import SearchResult, parse_datetime
from app.core.settings import Settings

logger = logging.getLogger(__name__)

SEARCH_CATEGORIES = (
    "all",
    "company",
    "research paper",
    "news",
    "pdf",
    "github",
    "tweet",
    "personal site",
    "linkedin profile",
    "financial report",
)

EXCERPT_LIMIT = 300

_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class SearchProvider:
    name = "base"

    async def search(self, query: str, category: str) -> List[SearchResult]:
        raise NotImplementedError


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


class ExaSearchProvider(SearchProvider):
    name = "exa"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _payload(self, query: str, category: str) -> dict:
        body: dict = {
            "query": query,
            "type": "auto",
            "numResults": self._settings.search_num_results,
            "contents": {"text": {"maxCharacters": self._settings.search_max_characters}},
        }
        if category and category != "all":
            body["category"] = category
        return body

    async def search(self, query: str, category: str) -> List[SearchResult]:
        headers = {"content-type": "application/json", "x-api-key": self._settings.search_api_key}
        async with httpx.AsyncClient(timeout=self._settings.search_timeout_ms / 1000.0) as client:
            response = await client.post(
                f"{self._settings.search_base_url}/search",
                json=self._payload(query, category),
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        raw_results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(raw_results, list):
            return []
        results: List[SearchResult] = []
        for item in raw_results[: self._settings.search_num_results]:
            if not isinstance(item, dict):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title") or ""),
                    url=str(item.get("url") or ""),
                    published_date=_optional_str(item.get("publishedDate")),
                    author=_optional_str(item.get("author")),
                    text=_optional_str(item.get("text")),
                )
            )
        logger.info("exa search query=%r category=%s results=%d", query, category, len(results))
        return results


class MockSearchProvider(SearchProvider):
    name = "mock"

    def __init__(self, results: Optional[List[SearchResult]] = None) -> None:
        self._results = results

    async def search(self, query: str, category: str) -> List[SearchResult]:
        if self._results is not None:
            return list(self._results)
        slug = "-".join(query.lower().split())[:64]
        return [
            SearchResult(
                title=f"Results for {query}",
                url=f"https://example.com/{category.replace(' ', '-')}/{slug}",
                text=f"Offline search result for '{query}' in the {category} category.",
            )
        ]


def build_search_provider(settings: Settings) -> SearchProvider:
    if settings.search_provider == "exa":
        if not settings.search_api_key:
            logger.warning("CHAT_SEARCH_PROVIDER=exa but EXA_API_KEY is empty")
        return ExaSearchProvider(settings)
    if settings.search_provider != "mock":
        logger.warning("Unknown CHAT_SEARCH_PROVIDER=%s, using mock provider", settings.search_provider)
    return MockSearchProvider()


def format_published_date(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        parsed: datetime = parse_datetime(value).astimezone(timezone.utc)
    except ValueError:
        return ""
    return f"{_MONTHS[parsed.month - 1]} {parsed.day}, {parsed.year}"


def format_search_results(results: Optional[List[SearchResult]], query: str) -> str:
    header = f'## Search Results for "{query}"\n\n'
    if not results:
        return header + "No results found. Try refining your search or asking a different question."

    lines = [header]
    for index, result in enumerate(results, start=1):
        lines.append(f"### {index}. [{result.title or ''}]({result.url or ''})\n")
        date = format_published_date(result.published_date)
        if date:
            lines.append(f"Published: {date}\n")
        if result.author:
            lines.append(f"Author: {result.author}\n")
        if result.text:
            excerpt = result.text[:EXCERPT_LIMIT]
            if len(result.text) > EXCERPT_LIMIT:
                excerpt += "..."
            lines.append(f"\n{excerpt}\n\n")
        lines.append("---\n\n")
    return "".join(lines)
