"""Web search client for the Tavily API."""
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.errors import ConfigurationError, SearchError, TransportError
from services.transport import TransportPolicy

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """A single search hit."""
    title: str
    url: str
    content: str
    score: float = 0.0


@dataclass
class SearchResponse:
    """Search hits plus an optional synthesized answer."""
    query: str
    results: List[SearchResult] = field(default_factory=list)
    answer: Optional[str] = None


class SearchClient:
    """Client for the Tavily search API with a short-lived result cache."""

    def __init__(
        self,
        api_key: Optional[str],
        transport: TransportPolicy,
        base_url: str = "https://api.tavily.com",
        search_depth: str = "advanced",
        cache_ttl: float = 300.0,
        max_query_length: int = 500,
    ):
        if not api_key:
            raise ConfigurationError("TAVILY_API_KEY must be provided or set in environment")

        self.api_key = api_key
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.search_depth = search_depth
        self.cache_ttl = cache_ttl
        self.max_query_length = max_query_length
        self._cache: Dict[Tuple[str, int], Tuple[float, SearchResponse]] = {}
        self._cache_lock = threading.Lock()
        logger.info("SearchClient initialized successfully")

    def search(self, query: str, max_results: int = 5) -> SearchResponse:
        """
        Search the web for a query.

        Args:
            query: Search query (1 to max_query_length characters)
            max_results: Maximum number of results to return

        Returns:
            SearchResponse with results and optional answer

        Raises:
            SearchError: For invalid queries or upstream failures
        """
        self._validate_query(query)

        cache_key = (query.lower().strip(), max_results)
        with self._cache_lock:
            cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            logger.debug(f"Search cache hit for: {query[:100]}")
            return cached[1]

        payload = {
            "api_key": self.api_key,
            "query": query,
            "max_results": max_results,
            "search_depth": self.search_depth,
            "include_answer": True,
            "include_images": False,
        }

        try:
            response = self.transport.request("POST", f"{self.base_url}/search", json=payload)
            data = response.json()
        except TransportError as e:
            logger.error(f"Search failed: {e}")
            raise SearchError(
                "Web search is currently unavailable",
                details={"original_error": str(e), "upstream_code": e.error.code},
            ) from e
        except ValueError as e:
            raise SearchError("Search returned an unreadable response", details={"original_error": str(e)}) from e

        result = self._parse_response(query, data, max_results)
        with self._cache_lock:
            self._cache[cache_key] = (time.monotonic(), result)
            self._evict_expired()

        logger.info(f"Search returned {len(result.results)} results for: {query[:100]}")
        return result

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @staticmethod
    def _parse_response(query: str, data: Any, max_results: int) -> SearchResponse:
        """Build a SearchResponse from the Tavily payload; malformed payloads raise SearchError."""
        try:
            results = [
                SearchResult(
                    title=item.get("title") or item.get("url", ""),
                    url=item.get("url", ""),
                    content=item.get("content") or "",
                    score=float(item.get("score") or 0.0),
                )
                for item in data.get("results") or []
            ][:max_results]
            return SearchResponse(query=query, results=results, answer=data.get("answer") or None)
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"Malformed search response: {e}")
            raise SearchError(
                "Search returned an unreadable response",
                details={"original_error": str(e)},
                code="INVALID_RESPONSE",
            ) from e

    def _validate_query(self, query: str) -> None:
        if not query or not query.strip():
            raise SearchError("Search query cannot be empty", code="INVALID_QUERY")
        if len(query) > self.max_query_length:
            raise SearchError(
                f"Search query too long (max {self.max_query_length} characters)",
                code="QUERY_TOO_LONG",
            )

    def _evict_expired(self) -> None:
        """Drop stale entries. Caller holds the cache lock."""
        now = time.monotonic()
        expired = [key for key, (stamp, _) in self._cache.items() if now - stamp >= self.cache_ttl]
        for key in expired:
            del self._cache[key]
