"""
Web search through the Google Custom Search JSON API.

The top results are scraped in parallel, scored against the query and
returned as JSON: at most three pages, each above a minimum relevance.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor

import httpx

from aicli.handlers.scrape import SUMMARY_SENTENCES, SUMMARY_THRESHOLD_CHARS, Scraper, is_skipped
from aicli.handlers.similarity import RELEVANCE_THRESHOLD, TfIdf, relevance, summarize
from aicli.tools import HandlerError

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
MAX_RESULTS = 3
MAX_SCRAPE_WORKERS = 10


class WebSearch:
    """Searches the web and ranks the scraped results."""

    def __init__(
        self,
        api_key: str,
        engine_id: str,
        scraper: Scraper | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.engine_id = engine_id
        self.scraper = scraper or Scraper()
        self._client = client or httpx.Client(timeout=httpx.Timeout(30.0, connect=10.0))

    def close(self) -> None:
        self._client.close()
        self.scraper.close()

    def search_online(self, query: str) -> str:
        if not self.api_key or not self.engine_id:
            raise HandlerError(
                "Google Search API is not configured. Set GOOGLE_SEARCH_API_KEY and "
                "GOOGLE_SEARCH_ENGINE_ID in ~/.aicli.conf"
            )
        logger.info(f"Searching online for: {query}")

        items = self._query_google(query)
        if not items:
            return "No results found."

        pages = self._scrape_all(items)
        documents = [content for _, _, content in pages if not _unusable(content)]
        if not documents:
            return "No valid content to process."

        tfidf = TfIdf.fit(documents)
        scored = []
        for title, link, content in pages:
            if _unusable(content):
                continue
            score = relevance(query, content, tfidf)
            logger.debug(f"Relevance of {link}: {score:.3f}")
            scored.append((score, title, link, content))
        scored.sort(key=lambda item: item[0], reverse=True)

        results = [
            {"title": title, "link": link, "content": _condense(content)}
            for score, title, link, content in scored[:MAX_RESULTS]
            if score >= RELEVANCE_THRESHOLD
        ]
        if not results:
            return (
                "No relevant results found, please ask the user if you should "
                "try a different search query."
            )
        return json.dumps(results, ensure_ascii=False)

    def _query_google(self, query: str) -> list[dict]:
        try:
            response = self._client.get(
                GOOGLE_SEARCH_URL,
                params={"key": self.api_key, "cx": self.engine_id, "q": query},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise HandlerError("Search failed: Request timed out") from e
        except httpx.HTTPStatusError as e:
            raise HandlerError(
                f"Search failed: Google API returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise HandlerError(f"Search failed: {e}") from e
        except ValueError as e:
            raise HandlerError(f"Failed to parse search response: {e}") from e
        return data.get("items") or []

    def _scrape_all(self, items: list[dict]) -> list[tuple[str, str, str]]:
        """Fetch every result's text in parallel, keeping the result order."""
        targets = [
            (item.get("title") or "No title", item.get("link") or "")
            for item in items
        ]

        def fetch(link: str) -> str:
            if not link:
                return "Skipped: no link"
            try:
                return self.scraper.fetch_text(link)
            except HandlerError as e:
                return f"Error: {e}"

        with ThreadPoolExecutor(max_workers=min(MAX_SCRAPE_WORKERS, len(targets))) as executor:
            contents = list(executor.map(fetch, [link for _, link in targets]))
        return [(title, link, content) for (title, link), content in zip(targets, contents)]


def _unusable(content: str) -> bool:
    return is_skipped(content) or content.startswith("Error")


def _condense(content: str) -> str:
    if len(content) <= SUMMARY_THRESHOLD_CHARS:
        return content
    return summarize(content, SUMMARY_SENTENCES)
