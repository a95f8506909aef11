"""Tests for metadata and full-content extraction."""

import httpx
import pytest

from tests.conftest import make_settings
from linkvault.core.content_extractor import (
    ContentExtractor,
    ContentType,
    ExtractionRule,
    ParsedDocument,
    clean_text,
    count_words,
    detect_content_type,
    extract_article,
    extract_author,
    extract_favicon,
    extract_metadata,
    extract_published_date,
    extract_tweet_from_meta,
    extract_video,
    parse_oembed_html,
)

PAGE_URL = "https://example.com/blog/post"

META_HTML = """
<html>
<head>
  <title>Plain Title</title>
  <meta property="og:title" content="OG Title">
  <meta name="twitter:title" content="Twitter Title">
  <meta name="description" content="Meta description">
  <meta property="og:image" content="https://cdn.example.com/cover.png">
  <meta property="og:site_name" content="Example Blog">
  <link rel="apple-touch-icon" href="/apple.png">
  <link rel="icon" sizes="16x16" href="/fav16.png">
</head>
<body><main><p>Welcome to the example page.</p></main></body>
</html>
"""

PARAGRAPH = (
    "Python packaging has changed a lot over the last few years, and the modern "
    "toolchain is much friendlier than it used to be for newcomers and experts alike."
)

ARTICLE_HTML = f"""
<html>
<head><meta name="author" content="Meta Author"></head>
<body>
  <nav>Home | About | Contact us today</nav>
  <article>
    <h1>Packaging in 2024</h1>
    <p>{PARAGRAPH}</p>
    <p>{PARAGRAPH}</p>
    <aside>Subscribe to our newsletter for more!</aside>
    <p>ok</p>
    <time datetime="2024-01-02">January 2</time>
  </article>
  <footer>Copyright Example Inc, all rights reserved</footer>
</body>
</html>
"""


class TestParsedDocument:
    """Tests for ordered first-match extraction."""

    def test_first_matching_rule_wins(self):
        doc = ParsedDocument(META_HTML, PAGE_URL)
        rules = [ExtractionRule('meta[property="og:title"]'), ExtractionRule("title", "text")]
        assert doc.find_first(rules) == "OG Title"

    def test_falls_through_missing_and_empty_matches(self):
        doc = ParsedDocument('<meta property="og:title" content="  "><title>Only Title</title>', PAGE_URL)
        rules = [ExtractionRule('meta[property="og:title"]'), ExtractionRule("title", "text")]
        assert doc.find_first(rules) == "Only Title"

    def test_invalid_selector_is_skipped(self):
        doc = ParsedDocument(META_HTML, PAGE_URL)
        rules = [ExtractionRule("[[["), ExtractionRule("title", "text")]
        assert doc.find_first(rules) == "Plain Title"

    def test_no_match_returns_empty(self):
        assert ParsedDocument("", PAGE_URL).find_first([ExtractionRule("title", "text")]) == ""

    def test_content_attribute_preferred_over_text(self):
        doc = ParsedDocument('<span itemprop="author" content="Attr">Text</span>', PAGE_URL)
        assert doc.find_first([ExtractionRule('[itemprop="author"]', None)]) == "Attr"


class TestExtractMetadata:
    def test_extracts_all_fields(self):
        metadata = extract_metadata(ParsedDocument(META_HTML, PAGE_URL), PAGE_URL)

        assert metadata.title == "OG Title"
        assert metadata.description == "Meta description"
        assert metadata.image == "https://cdn.example.com/cover.png"
        assert metadata.site_name == "Example Blog"
        assert metadata.favicon == "https://example.com/fav16.png"
        assert metadata.content == "Welcome to the example page."

    def test_title_falls_back_to_h1(self):
        doc = ParsedDocument("<body><h1>Heading Title</h1></body>", PAGE_URL)
        assert extract_metadata(doc, PAGE_URL).title == "Heading Title"

    def test_empty_document(self):
        metadata = extract_metadata(ParsedDocument("", PAGE_URL), PAGE_URL)

        assert metadata.title == ""
        assert metadata.description == ""
        assert metadata.favicon == "https://example.com/favicon.ico"

    def test_to_dict_uses_camel_case(self):
        metadata = extract_metadata(ParsedDocument(META_HTML, PAGE_URL), PAGE_URL)
        assert metadata.to_dict()["siteName"] == "Example Blog"

    def test_summary_content_is_capped(self):
        html = f"<body><main><p>{'word ' * 400}</p></main></body>"
        metadata = extract_metadata(ParsedDocument(html, PAGE_URL), PAGE_URL)
        assert len(metadata.content) == 1000


class TestExtractFavicon:
    def test_prefers_32px_icon(self):
        html = '<link rel="icon" href="/any.ico"><link rel="icon" sizes="32x32" href="/fav32.png">'
        assert extract_favicon(ParsedDocument(html), PAGE_URL) == "https://example.com/fav32.png"

    def test_shortcut_icon(self):
        html = '<link rel="shortcut icon" href="https://static.example.net/s.ico">'
        assert extract_favicon(ParsedDocument(html), PAGE_URL) == "https://static.example.net/s.ico"

    def test_relative_href_resolved_against_page(self):
        html = '<link rel="icon" href="icons/fav.png">'
        assert extract_favicon(ParsedDocument(html), PAGE_URL) == "https://example.com/blog/icons/fav.png"

    def test_default_when_absent(self):
        assert extract_favicon(ParsedDocument("<p>x</p>"), "http://site.org/a/b") == "http://site.org/favicon.ico"


class TestDetectContentType:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://twitter.com/a/status/1", ContentType.TWEET),
            ("https://x.com/jane/status/123", ContentType.TWEET),
            ("https://www.youtube.com/watch?v=abc", ContentType.VIDEO),
            ("https://youtu.be/abc", ContentType.VIDEO),
            ("https://medium.com/@someone/story", ContentType.ARTICLE),
            ("https://dev.to/someone/post", ContentType.ARTICLE),
            ("https://example.com/blog/post", ContentType.ARTICLE),
            ("https://example.com/article/42", ContentType.ARTICLE),
            ("https://example.com/", ContentType.WEBPAGE),
        ],
    )
    def test_classification(self, url, expected):
        assert detect_content_type(url) == expected


class TestExtractArticle:
    def test_uses_content_container_and_drops_boilerplate(self):
        text = extract_article(ParsedDocument(ARTICLE_HTML, PAGE_URL))

        assert text.startswith("Packaging in 2024\n\n")
        assert text.count(PARAGRAPH) == 2
        assert "newsletter" not in text
        assert "Contact us" not in text
        assert "Copyright" not in text
        # fragments of ten characters or fewer are noise
        assert "\n\nok" not in text

    def test_falls_back_to_body_text_without_container(self):
        html = "<html><body><div><p>Just a single paragraph of body text here.</p></div></body></html>"
        text = extract_article(ParsedDocument(html, PAGE_URL))
        assert "single paragraph of body text" in text

    def test_author_and_published_date(self):
        doc = ParsedDocument(ARTICLE_HTML, PAGE_URL)
        assert extract_author(doc) == "Meta Author"
        assert extract_published_date(doc) == "2024-01-02"

    def test_rel_author_link(self):
        doc = ParsedDocument('<a rel="author" href="/u/jane">Jane Writer</a>', PAGE_URL)
        assert extract_author(doc) == "Jane Writer"


class TestExtractVideo:
    def test_title_description_and_channel(self):
        html = """
        <meta property="og:title" content="How to Bake Bread">
        <meta property="og:description" content="Short description">
        <div id="description">A long description of the whole baking process.</div>
        <div id="channel-name">Bread Channel</div>
        """
        text, channel = extract_video(ParsedDocument(html))

        assert text == "How to Bake Bread\n\nA long description of the whole baking process."
        assert channel == "Bread Channel"

    def test_meta_description_fallback(self):
        html = '<title>Clip</title><meta name="description" content="Meta only">'
        text, channel = extract_video(ParsedDocument(html))

        assert text == "Clip\n\nMeta only"
        assert channel is None


class TestTweetExtraction:
    def test_parse_oembed_html(self):
        fragment = (
            '<blockquote class="twitter-tweet"><p lang="en" dir="ltr">Hello &amp; welcome '
            'to the thread <a href="https://t.co/x">pic.twitter.com/abc123</a></p>'
            '&mdash; Jane Doe (@jane) <a href="https://twitter.com/jane/status/1">January 1, 2024</a>'
            "</blockquote>"
        )
        assert parse_oembed_html(fragment) == "Hello & welcome to the thread"

    def test_meta_fallback_uses_title_text(self):
        html = """
        <meta property="og:title" content='Jane Doe on X: "This is the tweet text that is long enough" / X'>
        <meta property="og:description" content="hi">
        """
        text, author = extract_tweet_from_meta(ParsedDocument(html))

        assert text == "This is the tweet text that is long enough"
        assert author == "Jane Doe"

    def test_meta_fallback_keeps_longest_short_candidate(self):
        html = '<meta property="og:description" content="tiny"><title>A bit longer</title>'
        text, author = extract_tweet_from_meta(ParsedDocument(html))

        assert text == "A bit longer"
        assert author is None


class TestContentExtractor:
    """Tests for ContentExtractor.extract."""

    @pytest.mark.asyncio
    async def test_article_full_content(self):
        extractor = ContentExtractor(make_settings())
        result = await extractor.extract(ARTICLE_HTML, PAGE_URL)

        full = result.full_content
        assert full.content_type == ContentType.ARTICLE
        assert full.word_count == count_words(full.full_text)
        assert full.word_count > 20
        assert full.author == "Meta Author"
        assert full.published_date == "2024-01-02"
        assert result.favicon == "https://example.com/favicon.ico"

    @pytest.mark.asyncio
    async def test_metadata_only(self):
        extractor = ContentExtractor(make_settings())
        result = await extractor.extract(META_HTML, PAGE_URL, extract_content=False)

        assert result.full_content is None
        assert result.metadata.title == "OG Title"

    @pytest.mark.asyncio
    async def test_tweet_via_oembed(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "html": '<blockquote><p>Shipping the new release today, go try it out</p></blockquote>',
                    "author_name": "Jane Doe",
                },
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = ContentExtractor(make_settings(), client=client)
        result = await extractor.extract("", "https://x.com/jane/status/1")
        await extractor.close()

        assert requests[0].url.host == "publish.twitter.com"
        assert requests[0].url.params["url"] == "https://x.com/jane/status/1"
        assert result.full_content.content_type == ContentType.TWEET
        assert result.full_content.full_text == "Shipping the new release today, go try it out"
        assert result.full_content.author == "Jane Doe"

    @pytest.mark.asyncio
    async def test_tweet_falls_back_to_meta_when_oembed_fails(self):
        def handler(request):
            return httpx.Response(404)

        html = '<meta property="og:title" content=\'Jane Doe on X: "A tweet that is definitely long enough"\'>'
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = ContentExtractor(make_settings(), client=client)
        result = await extractor.extract(html, "https://twitter.com/jane/status/2")

        assert result.full_content.full_text == "A tweet that is definitely long enough"
        assert result.full_content.author == "Jane Doe"

    @pytest.mark.asyncio
    async def test_tweet_falls_back_to_meta_when_oembed_is_not_an_object(self):
        def handler(request):
            return httpx.Response(200, json=["not", "an", "object"])

        html = '<meta property="og:title" content=\'Jane Doe on X: "A tweet that is definitely long enough"\'>'
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        extractor = ContentExtractor(make_settings(), client=client)
        result = await extractor.extract(html, "https://twitter.com/jane/status/3")
        await extractor.close()

        assert result.full_content.full_text == "A tweet that is definitely long enough"
        assert result.full_content.author == "Jane Doe"

    @pytest.mark.asyncio
    async def test_malformed_html_never_raises(self):
        extractor = ContentExtractor(make_settings())
        result = await extractor.extract("<<<>>><div <p>broken", "https://example.com/")

        assert result.metadata.favicon == "https://example.com/favicon.ico"
        assert result.full_content.content_type == ContentType.WEBPAGE


class TestTextHelpers:
    def test_clean_text(self):
        assert clean_text("a   b\t c\n\n\n\n\nd  ") == "a b c\n\nd"
        assert clean_text("") == ""

    def test_count_words(self):
        assert count_words("  one two\nthree ") == 3
        assert count_words("") == 0
