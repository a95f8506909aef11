"""Metadata and full-text extraction from fetched HTML.

Every lookup goes through ``ParsedDocument.find_first`` with an ordered list
of ``ExtractionRule``s: the first non-empty match wins and a failing rule
just yields "". Content-type specific extraction (tweet, video, article,
webpage) builds on the same primitive.
"""

from __future__ import annotations

import copy
import html as html_lib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar
from urllib.parse import urljoin, urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup
from trafilatura.settings import use_config

from linkvault.core.errors import ParseError
from linkvault.core.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

OEMBED_URL = "https://publish.twitter.com/oembed"

# Minimum length for a scraped tweet candidate to win outright
MIN_TWEET_TEXT = 20

# Container must hold more text than this to be picked as article body
MIN_CONTAINER_TEXT = 200

# Fragments (paragraphs, headings, ...) shorter than this are noise
MIN_FRAGMENT_TEXT = 10

# Below this, fragment extraction is considered to have missed the body
MIN_ARTICLE_TEXT = 100

SUMMARY_CONTENT_LIMIT = 1000


class ContentType(str, Enum):
    TWEET = "tweet"
    VIDEO = "video"
    ARTICLE = "article"
    WEBPAGE = "webpage"


@dataclass(frozen=True)
class ExtractionRule:
    """A selector plus where to read the value from.

    ``attribute`` is an attribute name, ``"text"`` for the element text, or
    ``None`` to prefer a ``content`` attribute and fall back to the text.
    """

    selector: str
    attribute: str | None = "content"


@dataclass
class Metadata:
    title: str = ""
    description: str = ""
    image: str = ""
    site_name: str = ""
    favicon: str = ""
    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "image": self.image,
            "siteName": self.site_name,
            "favicon": self.favicon,
            "content": self.content,
        }


@dataclass
class FullContent:
    full_text: str
    content_type: ContentType
    author: str | None = None
    word_count: int = 0
    published_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fullText": self.full_text,
            "contentType": self.content_type.value,
            "author": self.author,
            "wordCount": self.word_count,
            "publishedDate": self.published_date,
        }


@dataclass
class ExtractionResult:
    metadata: Metadata
    favicon: str
    full_content: FullContent | None = None


TITLE_RULES = [
    ExtractionRule('meta[property="og:title"]'),
    ExtractionRule('meta[name="twitter:title"]'),
    ExtractionRule('meta[property="twitter:title"]'),
    ExtractionRule("title", "text"),
    ExtractionRule("h1", "text"),
]

DESCRIPTION_RULES = [
    ExtractionRule('meta[property="og:description"]'),
    ExtractionRule('meta[name="twitter:description"]'),
    ExtractionRule('meta[property="twitter:description"]'),
    ExtractionRule('meta[name="description"]'),
]

IMAGE_RULES = [
    ExtractionRule('meta[property="og:image"]'),
    ExtractionRule('meta[name="twitter:image"]'),
    ExtractionRule('meta[property="twitter:image"]'),
    ExtractionRule('meta[property="og:image:url"]'),
]

SITE_NAME_RULES = [
    ExtractionRule('meta[property="og:site_name"]'),
    ExtractionRule('meta[name="application-name"]'),
]

FAVICON_RULES = [
    ExtractionRule('link[rel="icon"][sizes="32x32"]', "href"),
    ExtractionRule('link[rel="icon"][sizes="16x16"]', "href"),
    ExtractionRule('link[rel="shortcut icon"]', "href"),
    ExtractionRule('link[rel="apple-touch-icon"]', "href"),
    ExtractionRule('link[rel="icon"]', "href"),
]

AUTHOR_RULES = [
    ExtractionRule('[rel="author"]', None),
    ExtractionRule(".author-name", None),
    ExtractionRule(".post-author", None),
    ExtractionRule('[itemprop="author"]', None),
    ExtractionRule(".byline", None),
    ExtractionRule('meta[name="author"]'),
]

PUBLISHED_DATE_RULES = [
    ExtractionRule("time[datetime]", "datetime"),
    ExtractionRule('[itemprop="datePublished"]', None),
    ExtractionRule(".post-date", "text"),
    ExtractionRule(".publish-date", "text"),
    ExtractionRule('meta[property="article:published_time"]'),
]

VIDEO_DESCRIPTION_RULES = [
    ExtractionRule("#description-inline-expander", "text"),
    ExtractionRule("#description", "text"),
    ExtractionRule('[slot="content"]', "text"),
    ExtractionRule("ytd-text-inline-expander", "text"),
]

VIDEO_CHANNEL_RULES = [
    ExtractionRule("#channel-name", "text"),
    ExtractionRule("ytd-channel-name", "text"),
    ExtractionRule('[itemprop="author"] [itemprop="name"]', None),
]

BOILERPLATE_SELECTORS = [
    "script",
    "style",
    "noscript",
    "nav",
    "header",
    "footer",
    "aside",
    ".sidebar",
    ".advertisement",
    ".ads",
    ".social-share",
    ".comments",
    ".related-posts",
    ".newsletter",
    '[role="banner"]',
    '[role="navigation"]',
    '[role="complementary"]',
    ".cookie-notice",
]

CONTENT_CONTAINER_SELECTORS = [
    "article",
    '[role="article"]',
    "main",
    ".post-content",
    ".article-content",
    ".entry-content",
    ".content",
    ".post-body",
    ".blog-post",
    "#content",
    ".markdown-body",
    ".prose",
]

SUMMARY_STRIP_SELECTORS = ["script", "style", "noscript", "nav", "header", "footer", "aside"]

SUMMARY_CONTAINER_SELECTORS = [
    "main",
    "article",
    '[role="main"]',
    ".content",
    "#content",
    ".post-content",
    ".entry-content",
]

TEXT_FRAGMENT_SELECTOR = "p, h1, h2, h3, h4, h5, h6, li, blockquote, pre"

ARTICLE_HOST_HINTS = ("medium.com", "dev.to", "hashnode", "substack.com")
ARTICLE_PATH_HINTS = ("/blog", "/article", "/post")

_TWEET_TITLE_TEXT = re.compile(
    r"on (?:X|Twitter)\s*:\s*[\"“](?P<text>.+?)[\"”]\s*(?:/\s*(?:X|Twitter))?\s*$",
    re.DOTALL,
)
_TWEET_TITLE_AUTHOR = re.compile(r"^(?P<author>.+?) on (?:X|Twitter)\b")
_TWEET_PIC_LINK = re.compile(r"\s*pic\.twitter\.com/\S+")
_TWEET_ATTRIBUTION = re.compile(r"\s*(?:&mdash;|—)\s*[^\n]*\(@\w+\)[^\n]*$")


class ParsedDocument:
    """Parsed HTML with first-match lookups over ordered extraction rules."""

    def __init__(self, html: str, url: str = ""):
        self.html = html or ""
        self.url = url
        try:
            self.soup = BeautifulSoup(self.html, "html.parser")
        except Exception as e:
            logger.warning(f"Could not parse HTML for {url}: {ParseError(str(e))}")
            self.soup = BeautifulSoup("", "html.parser")

    def clone(self) -> BeautifulSoup:
        """Deep copy of the tree, safe to strip elements from."""
        return copy.copy(self.soup)

    def find_first(self, rules: list[ExtractionRule]) -> str:
        for rule in rules:
            try:
                value = _read_rule(self.soup, rule)
            except Exception as e:
                logger.debug(f"Extraction rule {rule.selector!r} failed: {e}")
                continue
            if value:
                return value
        return ""


def _read_rule(root: Any, rule: ExtractionRule) -> str:
    element = root.select_one(rule.selector)
    if element is None:
        return ""
    if rule.attribute is None:
        value = element.get("content") or element.get_text(" ", strip=True)
    elif rule.attribute == "text":
        value = element.get_text(" ", strip=True)
    else:
        value = element.get(rule.attribute) or ""
    if isinstance(value, list):
        value = " ".join(value)
    return value.strip()


def _safe(label: str, fn: Callable[[], T], default: T) -> T:
    """Run one field extraction, logging and absorbing any failure."""
    try:
        return fn()
    except Exception as e:
        logger.debug(f"Extraction of {label} failed: {e!r}")
        return default


def clean_text(text: str) -> str:
    """Collapse whitespace runs and cap consecutive blank lines at two."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def hostname_of(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def default_favicon(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/favicon.ico"


def detect_content_type(url: str) -> ContentType:
    """Classify a URL by hostname and path patterns."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return ContentType.WEBPAGE
    host = (parsed.hostname or "").lower()
    path = parsed.path.lower()

    if "twitter.com" in host or "x.com" in host:
        return ContentType.TWEET
    if "youtube.com" in host or "youtu.be" in host:
        return ContentType.VIDEO
    if any(hint in host for hint in ARTICLE_HOST_HINTS) or any(
        hint in path for hint in ARTICLE_PATH_HINTS
    ):
        return ContentType.ARTICLE
    return ContentType.WEBPAGE


def extract_favicon(doc: ParsedDocument, url: str) -> str:
    href = doc.find_first(FAVICON_RULES)
    if not href:
        return default_favicon(url)
    try:
        return urljoin(url, href)
    except ValueError:
        return default_favicon(url)


def extract_summary_content(doc: ParsedDocument) -> str:
    """Short plain-text preview of the page's main region."""
    tree = doc.clone()
    for selector in SUMMARY_STRIP_SELECTORS:
        for element in tree.select(selector):
            element.decompose()

    container = None
    for selector in SUMMARY_CONTAINER_SELECTORS:
        container = tree.select_one(selector)
        if container is not None:
            break
    if container is None:
        container = tree.body or tree

    text = re.sub(r"\s+", " ", container.get_text(" ")).strip()
    return text[:SUMMARY_CONTENT_LIMIT]


def extract_metadata(doc: ParsedDocument, url: str) -> Metadata:
    """Best-effort page metadata. Each field is extracted independently."""
    return Metadata(
        title=_safe("title", lambda: doc.find_first(TITLE_RULES), ""),
        description=_safe("description", lambda: doc.find_first(DESCRIPTION_RULES), ""),
        image=_safe("image", lambda: doc.find_first(IMAGE_RULES), ""),
        site_name=_safe("site name", lambda: doc.find_first(SITE_NAME_RULES), ""),
        favicon=_safe("favicon", lambda: extract_favicon(doc, url), default_favicon(url)),
        content=_safe("content", lambda: extract_summary_content(doc), ""),
    )


def extract_author(doc: ParsedDocument) -> str | None:
    return doc.find_first(AUTHOR_RULES) or None


def extract_published_date(doc: ParsedDocument) -> str | None:
    return doc.find_first(PUBLISHED_DATE_RULES) or None


def _trafilatura_text(html: str) -> str:
    config = use_config()
    config.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")
    text = trafilatura.extract(
        html,
        config=config,
        include_comments=False,
        include_tables=True,
        favor_recall=True,
    )
    return text or ""


def extract_article(doc: ParsedDocument) -> str:
    """Main body text of an article-like page."""
    tree = doc.clone()
    for selector in BOILERPLATE_SELECTORS:
        for element in tree.select(selector):
            element.decompose()

    container = None
    for selector in CONTENT_CONTAINER_SELECTORS:
        candidate = tree.select_one(selector)
        if candidate is not None and len(candidate.get_text().strip()) > MIN_CONTAINER_TEXT:
            container = candidate
            break

    if container is None:
        recalled = _safe("trafilatura text", lambda: _trafilatura_text(doc.html), "")
        if recalled:
            return clean_text(recalled)
        body = tree.body or tree
        return clean_text(body.get_text("\n"))

    fragments = []
    for element in container.select(TEXT_FRAGMENT_SELECTOR):
        text = element.get_text(" ", strip=True)
        if len(text) > MIN_FRAGMENT_TEXT:
            fragments.append(text)
    full_text = "\n\n".join(fragments)

    if len(full_text) < MIN_ARTICLE_TEXT:
        full_text = container.get_text("\n")
    return clean_text(full_text)


def extract_video(doc: ParsedDocument) -> tuple[str, str | None]:
    """Video title plus the richest description available, and the channel."""
    title = doc.find_first([ExtractionRule('meta[property="og:title"]'), ExtractionRule("title", "text")])
    description = doc.find_first(VIDEO_DESCRIPTION_RULES) or doc.find_first(
        [ExtractionRule('meta[property="og:description"]'), ExtractionRule('meta[name="description"]')]
    )
    channel = doc.find_first(VIDEO_CHANNEL_RULES) or None
    parts = [part for part in (title, description) if part]
    return clean_text("\n\n".join(parts)), channel


def parse_oembed_html(fragment: str) -> str:
    """Tweet text from an oEmbed blockquote fragment."""
    tree = BeautifulSoup(fragment or "", "html.parser")
    paragraphs = [p.get_text(" ", strip=True) for p in tree.find_all("p")]
    text = "\n\n".join(p for p in paragraphs if p)
    text = html_lib.unescape(text)
    text = _TWEET_PIC_LINK.sub("", text)
    text = _TWEET_ATTRIBUTION.sub("", text)
    return clean_text(text)


def extract_tweet_from_meta(doc: ParsedDocument) -> tuple[str, str | None]:
    """Scrape tweet text from meta tags when oEmbed is unavailable."""
    og_title = doc.find_first([ExtractionRule('meta[property="og:title"]')])
    page_title = doc.find_first([ExtractionRule("title", "text")])

    def embedded(title: str) -> str:
        match = _TWEET_TITLE_TEXT.search(title)
        return match.group("text") if match else ""

    candidates = [
        doc.find_first([ExtractionRule('meta[property="og:description"]')]),
        embedded(og_title),
        doc.find_first(
            [
                ExtractionRule('meta[name="twitter:description"]'),
                ExtractionRule('meta[property="twitter:description"]'),
            ]
        ),
        embedded(page_title) or page_title,
    ]

    best = ""
    for candidate in candidates:
        text = clean_text(html_lib.unescape(candidate)).strip("\"“” ")
        if len(text) >= MIN_TWEET_TEXT:
            best = text
            break
        if len(text) > len(best):
            best = text

    author = None
    match = _TWEET_TITLE_AUTHOR.match(og_title or page_title)
    if match:
        author = match.group("author").strip()
    return best, author


class ContentExtractor:
    """Derives metadata and type-specific full text from fetched HTML."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._oembed_timeout = settings.oembed_timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._oembed_timeout))
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_tweet_oembed(self, url: str) -> tuple[str, str | None]:
        """Tweet text and author via the public oEmbed endpoint."""
        client = await self._get_client()
        response = await client.get(
            OEMBED_URL,
            params={"url": url, "omit_script": "true"},
            timeout=self._oembed_timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected oEmbed payload: {type(data).__name__}")
        return parse_oembed_html(data.get("html", "")), data.get("author_name") or None

    async def extract_tweet(self, doc: ParsedDocument, url: str) -> tuple[str, str | None]:
        try:
            text, author = await self.fetch_tweet_oembed(url)
            if text:
                return text, author
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"oEmbed lookup failed for {url}: {e}; falling back to meta tags")
        return extract_tweet_from_meta(doc)

    async def extract_full_content(self, doc: ParsedDocument, url: str) -> FullContent:
        content_type = detect_content_type(url)
        author: str | None = None
        published: str | None = None

        if content_type == ContentType.TWEET:
            try:
                text, author = await self.extract_tweet(doc, url)
            except Exception as e:
                logger.debug(f"Tweet extraction failed for {url}: {e!r}")
                text = ""
        elif content_type == ContentType.VIDEO:
            text, author = _safe("video", lambda: extract_video(doc), ("", None))
        else:
            text = _safe("article", lambda: extract_article(doc), "")
            author = _safe("author", lambda: extract_author(doc), None)
            published = _safe("published date", lambda: extract_published_date(doc), None)

        text = clean_text(text)
        return FullContent(
            full_text=text,
            content_type=content_type,
            author=author,
            word_count=count_words(text),
            published_date=published,
        )

    async def extract(self, html: str, url: str, extract_content: bool = True) -> ExtractionResult:
        """Extract metadata, favicon and (optionally) full content.

        Never raises: every field falls back to its empty value on failure.
        """
        doc = ParsedDocument(html, url)
        metadata = extract_metadata(doc, url)
        full_content = None
        if extract_content:
            full_content = await self.extract_full_content(doc, url)
        return ExtractionResult(metadata=metadata, favicon=metadata.favicon, full_content=full_content)
