"""Tests for URL normalization and the HTML fetcher (transport mocked)."""

import asyncio

import httpx
import pytest

from tests.conftest import make_settings
from linkvault.core.errors import InvalidInputError, OperationTimeoutError
from linkvault.core.html_fetcher import HtmlFetcher, normalize_url
from linkvault.core.resilience import RetryPolicy

PAGE = "<html><head><title>Hello</title></head><body>Hi</body></html>"


def _fetcher(handler, **settings_overrides):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return HtmlFetcher(
        make_settings(**settings_overrides),
        client=client,
        retry_policy=RetryPolicy(initial_delay=0),
    )


class TestNormalizeUrl:
    """Tests for normalize_url."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("example.com", "https://example.com"),
            ("  example.com/path?q=1  ", "https://example.com/path?q=1"),
            ("http://example.org/a", "http://example.org/a"),
            ("https://sub.example.co.uk", "https://sub.example.co.uk"),
            ("localhost:8000/x", "https://localhost:8000/x"),
            ("127.0.0.1:8080", "https://127.0.0.1:8080"),
        ],
    )
    def test_valid_urls(self, raw, expected):
        assert normalize_url(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        ["not-a-url", "ftp://example.com", "javascript:alert(1)", "mailto:someone@example.com", "https://"],
    )
    def test_invalid_urls(self, raw):
        with pytest.raises(InvalidInputError, match="Invalid URL format"):
            normalize_url(raw)

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_missing_url(self, raw):
        with pytest.raises(InvalidInputError, match="URL is required"):
            normalize_url(raw)


class TestHtmlFetcher:
    """Tests for HtmlFetcher.fetch_html."""

    @pytest.mark.asyncio
    async def test_fetches_with_browser_headers(self):
        seen = []

        def handler(request):
            seen.append(request.headers["User-Agent"])
            return httpx.Response(200, text=PAGE)

        fetcher = _fetcher(handler)
        html = await fetcher.fetch_html("example.com")
        await fetcher.close()

        assert html == PAGE
        assert len(seen) == 1
        assert "Chrome/120" in seen[0]

    @pytest.mark.asyncio
    async def test_falls_back_to_minimal_headers(self):
        seen = []

        def handler(request):
            agent = request.headers["User-Agent"]
            seen.append(agent)
            if "Chrome" in agent:
                return httpx.Response(403, text="blocked")
            return httpx.Response(200, text=PAGE)

        fetcher = _fetcher(handler)
        html = await fetcher.fetch_html("https://example.com")

        assert html == PAGE
        assert seen[1] == "Mozilla/5.0 (compatible; MetadataBot/1.0)"

    @pytest.mark.asyncio
    async def test_client_errors_yield_empty_without_retry(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(404, text="missing")

        fetcher = _fetcher(handler)
        assert await fetcher.fetch_html("https://example.com/missing") == ""
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_empty(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(503, text="busy")

        fetcher = _fetcher(handler)
        assert await fetcher.fetch_html("https://example.com") == ""
        # three attempts, each trying both header sets
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_recovers_on_retry(self):
        responses = [httpx.Response(502), httpx.Response(502), httpx.Response(200, text=PAGE)]

        def handler(request):
            return responses.pop(0)

        fetcher = _fetcher(handler)
        assert await fetcher.fetch_html("https://example.com") == PAGE

    @pytest.mark.asyncio
    async def test_unreachable_host_yields_empty(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            raise httpx.ConnectError("Name or service not known", request=request)

        fetcher = _fetcher(handler)
        assert await fetcher.fetch_html("https://unreachable.invalid") == ""
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_overall_deadline(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, text=PAGE)

        fetcher = _fetcher(handler, metadata_deadline_ms=50)
        with pytest.raises(OperationTimeoutError, match="exceeded"):
            await fetcher.fetch_html("https://slow.example.com")

    @pytest.mark.asyncio
    async def test_invalid_url_is_rejected_before_fetching(self):
        def handler(request):
            raise AssertionError("should not fetch")

        fetcher = _fetcher(handler)
        with pytest.raises(InvalidInputError):
            await fetcher.fetch_html("not-a-url")
