"""HTML fetcher for saved links.

Retrieves raw HTML with a realistic browser header set, falls back to a
minimal header set once, and wraps the pair in retry-with-backoff. Total
failure yields an empty string; only the overall deadline surfaces as an
error.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from urllib.parse import urlparse

import httpx

from linkvault.core.errors import InvalidInputError, OperationTimeoutError, UpstreamError
from linkvault.core.resilience import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    classify_transport_error,
    with_retry,
    with_timeout,
)
from linkvault.core.settings import Settings

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

FALLBACK_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; MetadataBot/1.0)",
    "Accept": "text/html",
}

ALLOWED_SCHEMES = {"http", "https"}

# "mailto:x", "javascript:y"; a host followed by a port is not a scheme
_BARE_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:(?!\d)", re.IGNORECASE)


def _is_valid_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    labels = host.split(".")
    return len(labels) >= 2 and all(labels)


def normalize_url(url: str) -> str:
    """Normalize a user-supplied URL.

    Prepends ``https://`` when no scheme is present and rejects anything
    that is not an http(s) URL with a plausible hostname.

    Raises:
        InvalidInputError: If the URL cannot be used.
    """
    url = (url or "").strip()
    if not url:
        raise InvalidInputError("URL is required")

    if "://" not in url:
        if _BARE_SCHEME.match(url):
            raise InvalidInputError("Invalid URL format")
        url = f"https://{url}"

    try:
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
    except ValueError as e:
        raise InvalidInputError("Invalid URL format") from e

    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not host or not _is_valid_host(host):
        raise InvalidInputError("Invalid URL format")
    return url


class HtmlFetcher:
    """Fetches HTML with header fallback, retry and an overall deadline."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self._timeout = settings.fetch_timeout
        self._deadline = settings.metadata_deadline
        self._retry_policy = retry_policy
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str, headers: dict[str, str]) -> str:
        client = await self._get_client()
        try:
            response = await client.get(url, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{type(e).__name__} fetching {url}: {e}",
                error_type=classify_transport_error(e),
            ) from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"HTTP {response.status_code} fetching {url}",
                status=response.status_code,
            )
        return response.text

    async def _fetch_once(self, url: str) -> str:
        """One browser-header attempt followed by one minimal-header attempt."""
        try:
            return await self._get(url, BROWSER_HEADERS)
        except UpstreamError as e:
            logger.warning(f"Browser-header fetch failed for {url} ({e}); trying minimal headers")
        return await self._get(url, FALLBACK_HEADERS)

    async def _fetch_with_retry(self, url: str) -> str:
        try:
            return await with_retry(
                lambda: self._fetch_once(url),
                self._retry_policy,
                label=f"fetch {url}",
            )
        except UpstreamError as e:
            logger.warning(f"Could not fetch {url}: {e}")
            return ""

    async def fetch_html(self, url: str) -> str:
        """Fetch the HTML for ``url``.

        Returns:
            The page HTML, or "" when every attempt failed.

        Raises:
            InvalidInputError: If the URL is not a usable http(s) URL.
            OperationTimeoutError: If the overall deadline is exceeded.
        """
        url = normalize_url(url)
        try:
            return await with_timeout(
                self._fetch_with_retry(url),
                self._deadline,
                f"Fetching {url} exceeded {self._deadline:g}s",
            )
        except OperationTimeoutError:
            logger.warning(f"Fetch deadline exceeded for {url}")
            raise
