"""Link metadata lookup: fetch, extract and degrade gracefully."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from linkvault.core.content_extractor import (
    ContentExtractor,
    ExtractionResult,
    FullContent,
    Metadata,
    default_favicon,
    hostname_of,
)
from linkvault.core.html_fetcher import HtmlFetcher, normalize_url

logger = logging.getLogger(__name__)

UNAVAILABLE_DESCRIPTION = "Website content could not be fetched."


@dataclass
class LinkMetadata:
    """Metadata payload for a URL; ``fetched`` is False for the degraded form."""

    url: str
    metadata: Metadata
    full_content: FullContent | None = None
    fetched: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = self.metadata.to_dict()
        data["fullContent"] = self.full_content.to_dict() if self.full_content else None
        return data


def degraded_metadata(url: str) -> LinkMetadata:
    host = hostname_of(url)
    return LinkMetadata(
        url=url,
        metadata=Metadata(
            title=host,
            description=UNAVAILABLE_DESCRIPTION,
            image="",
            site_name=host,
            favicon=default_favicon(url),
            content="",
        ),
        fetched=False,
    )


def with_fallbacks(url: str, result: ExtractionResult) -> Metadata:
    """Fill required fields the page did not provide."""
    host = hostname_of(url)
    metadata = result.metadata
    return Metadata(
        title=metadata.title or host,
        description=metadata.description,
        image=metadata.image,
        site_name=metadata.site_name or host,
        favicon=result.favicon or default_favicon(url),
        content=metadata.content,
    )


class MetadataService:
    """Combines the HTML fetcher and the content extractor for one URL."""

    def __init__(self, fetcher: HtmlFetcher, extractor: ContentExtractor) -> None:
        self.fetcher = fetcher
        self.extractor = extractor

    async def lookup(self, url: str, extract_content: bool = False) -> LinkMetadata:
        """Fetch and extract metadata for ``url``.

        Raises:
            InvalidInputError: If the URL is unusable.
            OperationTimeoutError: If the fetch deadline is exceeded.
        """
        url = normalize_url(url)
        html = await self.fetcher.fetch_html(url)
        if not html:
            logger.info(f"No HTML for {url}; returning degraded metadata")
            return degraded_metadata(url)

        result = await self.extractor.extract(html, url, extract_content=extract_content)
        return LinkMetadata(
            url=url,
            metadata=with_fallbacks(url, result),
            full_content=result.full_content,
        )
