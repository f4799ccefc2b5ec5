"""Unit tests for SearchClient."""
import sys
sys.path.insert(0, 'backend')

import json
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from unittest.mock import Mock
from services.errors import ConfigurationError, SearchError
from services.search_client import SearchClient
from services.transport import TransportPolicy

TAVILY_RESPONSE = {
    "answer": "Python 3.13 is the latest release.",
    "results": [
        {"title": "Python Releases", "url": "https://python.org/downloads", "content": "Latest: 3.13", "score": 0.97},
        {"title": "What's New", "url": "https://docs.python.org/3/whatsnew", "content": "Changes in 3.13", "score": 0.81},
    ],
}


def make_client(handler, **kwargs):
    transport = TransportPolicy("Tavily", transport=httpx.MockTransport(handler), sleep=Mock())
    return SearchClient(api_key="tvly-test", transport=transport, base_url="https://search.test", **kwargs)


class TestSearchClient:
    """Test suite for SearchClient."""

    def test_missing_api_key_raises(self):
        """Test a missing key is a configuration error."""
        with pytest.raises(ConfigurationError, match="TAVILY_API_KEY"):
            SearchClient(api_key=None, transport=TransportPolicy("Tavily"))

    def test_search_success(self):
        """Test results and answer are parsed."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=TAVILY_RESPONSE)

        response = make_client(handler).search("latest python", max_results=5)

        assert response.answer == "Python 3.13 is the latest release."
        assert [r.title for r in response.results] == ["Python Releases", "What's New"]
        assert response.results[0].score == 0.97
        assert bodies[0]["search_depth"] == "advanced"
        assert bodies[0]["include_answer"] is True
        assert bodies[0]["max_results"] == 5

    def test_results_capped_at_max_results(self):
        """Test extra results from the backend are dropped."""
        client = make_client(lambda request: httpx.Response(200, json=TAVILY_RESPONSE))
        assert len(client.search("python", max_results=1).results) == 1

    def test_empty_query_rejected(self):
        """Test blank queries never reach the backend."""
        handler = Mock()
        with pytest.raises(SearchError) as exc_info:
            make_client(handler).search("   ")
        assert exc_info.value.error.code == "INVALID_QUERY"
        handler.assert_not_called()

    def test_long_query_rejected(self):
        """Test queries over the length limit are rejected."""
        client = make_client(Mock(), max_query_length=10)
        with pytest.raises(SearchError) as exc_info:
            client.search("x" * 11)
        assert exc_info.value.error.code == "QUERY_TOO_LONG"

    def test_upstream_failure_is_search_error(self):
        """Test transport failures surface as SearchError."""
        client = make_client(lambda request: httpx.Response(401, json={"detail": "bad key"}))
        with pytest.raises(SearchError) as exc_info:
            client.search("python")
        assert exc_info.value.error.details["upstream_code"] == "AUTHENTICATION_ERROR"

    @pytest.mark.parametrize("payload", [
        ["not", "an", "object"],
        {"results": ["not-a-result"]},
        {"results": [{"title": "T", "url": "https://a.test", "score": "high"}]},
    ])
    def test_malformed_payload_is_search_error(self, payload):
        """Test payloads of the wrong shape surface as SearchError."""
        client = make_client(lambda request: httpx.Response(200, json=payload))
        with pytest.raises(SearchError) as exc_info:
            client.search("python")
        assert exc_info.value.error.code == "INVALID_RESPONSE"
        assert client._cache == {}

    def test_cache_hit_skips_backend(self):
        """Test repeated queries inside the TTL are served from cache."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=TAVILY_RESPONSE)

        client = make_client(handler)
        first = client.search("Latest Python")
        second = client.search("  latest python ")

        assert first is second
        assert len(calls) == 1

    def test_cache_expires(self):
        """Test entries older than the TTL are refetched."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=TAVILY_RESPONSE)

        client = make_client(handler, cache_ttl=300)
        client.search("python")
        key, (stamp, cached) = next(iter(client._cache.items()))
        client._cache[key] = (stamp - 301, cached)
        client.search("python")

        assert len(calls) == 2

    def test_clear_cache(self):
        """Test clear_cache forces a refetch."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=TAVILY_RESPONSE)

        client = make_client(handler)
        client.search("python")
        client.clear_cache()
        client.search("python")
        assert len(calls) == 2

    def test_concurrent_searches_share_cache(self):
        """Test parallel searches from many threads insert and evict without errors."""
        client = make_client(lambda request: httpx.Response(200, json=TAVILY_RESPONSE), cache_ttl=0.0001)

        def run(worker):
            for i in range(50):
                client.search(f"query {worker} {i}")

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(run, worker) for worker in range(4)]
            errors = [f.exception() for f in futures]

        assert errors == [None, None, None, None]
