"""
Unit tests for feed and article retrieval.
Run with: pytest tests/test_feeds.py -v
"""
import pytest
import time
from unittest.mock import Mock, patch
import sys
import os

import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from feeds import (
    ArticleFetcher,
    ErrorKind,
    FeedFetcher,
    FetchError,
    FEED_CATEGORIES,
    RetryPolicy,
    classify_fetch_error,
    extract_article_text,
    format_error_message,
    parse_feed,
    render_article,
    resolve_feed_source,
    validate_url,
    with_retry,
)

NO_RETRY = RetryPolicy(max_retries=0, base_delay=0)

RSS_CONTENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
    <channel>
        <title>Test Feed</title>
        <item>
            <title>First Article</title>
            <link>https://example.com/first</link>
            <pubDate>Thu, 05 Dec 2024 10:00:00 GMT</pubDate>
            <dc:creator>Jane Doe</dc:creator>
            <category>Tech</category>
            <category>AI</category>
            <description>Short description</description>
            <content:encoded><![CDATA[<p>Full <b>body</b> text</p>]]></content:encoded>
        </item>
        <item>
            <title>Second Article</title>
            <link>https://example.com/second</link>
        </item>
    </channel>
</rss>
"""

ATOM_CONTENT = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
    <title>Atom Feed</title>
    <entry>
        <title>Atom Entry</title>
        <link href="https://example.com/atom-entry"/>
        <updated>2024-12-05T10:00:00Z</updated>
        <author><name>Sam Writer</name></author>
        <summary>Atom summary</summary>
    </entry>
</feed>
"""


def mock_response(status_code=200, content=b'', text='', reason='OK'):
    response = Mock()
    response.status_code = status_code
    response.content = content
    response.text = text
    response.reason = reason
    # requests reports any status below 400 as ok
    response.ok = status_code < 400
    return response


class TestResolveFeedSource:
    """Tests for feed URL resolution."""

    def test_category_default(self):
        source = resolve_feed_source("tech")
        assert source.url == FEED_CATEGORIES["tech"]
        assert source.name == "The Verge (tech)"

    def test_configured_url_overrides_category(self):
        source = resolve_feed_source("tech", configured_url="https://example.com/server.xml")
        assert source.url == "https://example.com/server.xml"
        assert source.name == "Custom Feed"

    def test_call_url_overrides_everything(self):
        source = resolve_feed_source("tech", "https://example.com/call.xml", "https://example.com/server.xml")
        assert source.url == "https://example.com/call.xml"
        assert source.name == "Custom Feed"

    def test_unknown_category(self):
        with pytest.raises(KeyError):
            resolve_feed_source("sports")


class TestValidateUrl:
    """Tests for URL validation."""

    def test_valid_urls(self):
        assert validate_url("https://example.com")[0] is True
        assert validate_url("http://example.com/feed.xml?x=1")[0] is True

    def test_invalid_urls(self):
        assert validate_url("")[0] is False
        assert validate_url(None)[0] is False
        assert validate_url(42)[0] is False
        assert validate_url("ftp://example.com")[0] is False
        assert validate_url("not a url")[0] is False
        assert validate_url("https://")[0] is False


class TestClassifyFetchError:
    """Tests for error classification."""

    def test_dns_signatures(self):
        assert classify_fetch_error("getaddrinfo ENOTFOUND example.com") == ErrorKind.DNS
        assert classify_fetch_error("getaddrinfo EAI_AGAIN example.com") == ErrorKind.DNS
        assert classify_fetch_error(
            "Max retries exceeded (Caused by NameResolutionError: Failed to resolve 'x' "
            "([Errno -2] Name or service not known))"
        ) == ErrorKind.DNS

    def test_timeout_signatures(self):
        assert classify_fetch_error("connect ETIMEDOUT 1.2.3.4:443") == ErrorKind.TIMEOUT
        assert classify_fetch_error("Read timed out. (read timeout=15)") == ErrorKind.TIMEOUT

    def test_connection_refused(self):
        assert classify_fetch_error("connect ECONNREFUSED 127.0.0.1:80") == ErrorKind.CONNECTION_REFUSED
        assert classify_fetch_error("[Errno 111] Connection refused") == ErrorKind.CONNECTION_REFUSED

    def test_http_status_signatures(self):
        assert classify_fetch_error("Status code 403") == ErrorKind.ACCESS_DENIED
        assert classify_fetch_error("Access denied by proxy") == ErrorKind.ACCESS_DENIED
        assert classify_fetch_error("404 Client Error: Not Found") == ErrorKind.NOT_FOUND

    def test_priority_order(self):
        # DNS beats timeout, timeout beats 403/404
        assert classify_fetch_error("ENOTFOUND after timeout") == ErrorKind.DNS
        assert classify_fetch_error("timeout while reading 404 page") == ErrorKind.TIMEOUT
        assert classify_fetch_error("403 then 404") == ErrorKind.ACCESS_DENIED

    def test_generic(self):
        assert classify_fetch_error("something odd happened") == ErrorKind.GENERIC
        assert classify_fetch_error("") == ErrorKind.GENERIC


class TestFormatErrorMessage:
    """Tests for user-facing error rendering."""

    def test_fetch_error_with_url_and_status(self):
        error = FetchError("Feed not found", kind=ErrorKind.NOT_FOUND,
                           url="https://example.com/feed", status_code=404)
        assert format_error_message(error) == (
            "Feed not found\n   URL: https://example.com/feed\n   Status: 404"
        )

    def test_fetch_error_without_status(self):
        error = FetchError("Request timed out", kind=ErrorKind.TIMEOUT, url="https://example.com")
        assert format_error_message(error) == "Request timed out\n   URL: https://example.com"

    def test_plain_exception(self):
        assert format_error_message(ValueError("boom")) == "boom"


class TestWithRetry:
    """Tests for the retry executor."""

    @pytest.mark.asyncio
    async def test_success_without_retry(self):
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        assert await with_retry(operation, RetryPolicy(3, 0)) == "ok"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self):
        calls = []
        delays = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("transient")
            return "done"

        async def fake_sleep(delay):
            delays.append(delay)

        with patch('feeds.asyncio.sleep', new=fake_sleep):
            result = await with_retry(operation, RetryPolicy(max_retries=3, base_delay=1.0))

        assert result == "done"
        assert len(calls) == 3
        assert delays == [1.0, 2.0]
        assert sum(delays) >= 3.0

    @pytest.mark.asyncio
    async def test_elapsed_time_follows_backoff(self):
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("transient")
            return "done"

        start = time.monotonic()
        result = await with_retry(operation, RetryPolicy(max_retries=3, base_delay=0.02))
        elapsed = time.monotonic() - start

        assert result == "done"
        assert elapsed >= 0.02 + 0.04

    @pytest.mark.asyncio
    async def test_raises_last_error_after_exhausting(self):
        calls = []

        async def operation():
            calls.append(1)
            raise RuntimeError(f"failure {len(calls)}")

        with pytest.raises(RuntimeError, match="failure 3"):
            await with_retry(operation, RetryPolicy(max_retries=2, base_delay=0))
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_logs_each_retry(self, caplog):
        async def operation():
            raise RuntimeError("nope")

        with caplog.at_level('WARNING', logger='vergenews.feeds'):
            with pytest.raises(RuntimeError):
                await with_retry(operation, RetryPolicy(max_retries=2, base_delay=0), context="Fetching x")

        messages = [r.getMessage() for r in caplog.records]
        assert messages == [
            "Fetching x failed (attempt 1/3), retrying in 0ms...",
            "Fetching x failed (attempt 2/3), retrying in 0ms...",
        ]


class TestParseFeed:
    """Tests for feed parsing."""

    def test_parse_rss(self):
        items = parse_feed(RSS_CONTENT, "https://example.com/feed")

        assert [i.title for i in items] == ["First Article", "Second Article"]
        first = items[0]
        assert first.link == "https://example.com/first"
        assert first.pub_date == "Thu, 05 Dec 2024 10:00:00 GMT"
        assert first.creator == "Jane Doe"
        assert first.categories == ("Tech", "AI")
        assert first.content_snippet == "Full body text"

    def test_missing_fields_stay_none(self):
        second = parse_feed(RSS_CONTENT, "https://example.com/feed")[1]
        assert second.pub_date is None
        assert second.creator is None
        assert second.content is None
        assert second.content_snippet is None
        assert second.categories == ()

    def test_parse_atom(self):
        items = parse_feed(ATOM_CONTENT, "https://example.com/atom")

        assert len(items) == 1
        assert items[0].title == "Atom Entry"
        assert items[0].link == "https://example.com/atom-entry"
        assert items[0].pub_date == "2024-12-05T10:00:00Z"
        assert items[0].creator == "Sam Writer"
        assert items[0].content_snippet == "Atom summary"

    def test_parse_empty_rss(self):
        rss_content = b"""<?xml version="1.0"?><rss version="2.0"><channel></channel></rss>"""
        assert parse_feed(rss_content, "https://example.com/feed") == []

    def test_not_a_feed(self):
        with pytest.raises(FetchError) as exc_info:
            parse_feed(b"this is plainly not a feed", "https://example.com/feed")
        assert exc_info.value.kind == ErrorKind.PARSE
        assert exc_info.value.message.startswith("Failed to parse RSS feed")


class TestFeedFetcher:
    """Tests for feed fetching with mocked HTTP."""

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_fetch_success(self, mock_get):
        mock_get.return_value = mock_response(content=RSS_CONTENT)

        items = await FeedFetcher(retry_policy=NO_RETRY).fetch("https://example.com/feed")

        assert len(items) == 2
        args, kwargs = mock_get.call_args
        assert args[0] == "https://example.com/feed"
        assert kwargs['timeout'] == 15.0
        assert 'Mozilla' in kwargs['headers']['User-Agent']

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_dns_failure_is_classified(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("getaddrinfo ENOTFOUND www.example.invalid")

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=RetryPolicy(3, 0)).fetch("https://www.example.invalid/feed")

        error = exc_info.value
        assert error.kind == ErrorKind.DNS
        assert error.message.startswith("DNS resolution failed")
        assert error.url == "https://www.example.invalid/feed"
        assert mock_get.call_count == 4

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_404_is_classified_and_retried(self, mock_get):
        mock_get.return_value = mock_response(status_code=404, reason='Not Found')

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=RetryPolicy(2, 0)).fetch("https://example.com/feed")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert exc_info.value.status_code == 404
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_403_is_classified(self, mock_get):
        mock_get.return_value = mock_response(status_code=403, reason='Forbidden')

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=NO_RETRY).fetch("https://example.com/feed")

        assert exc_info.value.kind == ErrorKind.ACCESS_DENIED
        assert exc_info.value.status_code == 403
        assert exc_info.value.message.startswith("Access denied")

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_generic_failure_keeps_original_message(self, mock_get):
        mock_get.side_effect = requests.exceptions.RequestException("weird failure")

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=NO_RETRY).fetch("https://example.com/feed")

        assert exc_info.value.kind == ErrorKind.GENERIC
        assert exc_info.value.message == "Failed to fetch RSS feed: weird failure"

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_server_error_is_classified_by_status_not_url(self, mock_get):
        mock_get.return_value = mock_response(status_code=500, reason='Internal Server Error')

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=NO_RETRY).fetch("https://example.com/feeds/4040.xml")

        assert exc_info.value.kind == ErrorKind.HTTP
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to fetch RSS feed: Status code 500"

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_transport_error_ignores_words_in_url(self, mock_get):
        url = "https://timeout.example.com/feed403.xml"
        mock_get.side_effect = requests.exceptions.ConnectionError(
            "HTTPSConnectionPool(host='timeout.example.com', port=443): Max retries exceeded "
            "with url: /feed403.xml (Caused by NewConnectionError('<urllib3.connection.HTTPSConnection "
            "object at 0x7f4040a1>: Failed to establish a new connection: [Errno 111] Connection refused'))"
        )

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=NO_RETRY).fetch(url)

        assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_unfollowed_redirect_is_a_failure(self, mock_get):
        mock_get.return_value = mock_response(status_code=300, content=b'<html>Multiple Choices</html>',
                                              reason='Multiple Choices')

        with pytest.raises(FetchError) as exc_info:
            await FeedFetcher(retry_policy=NO_RETRY).fetch("https://example.com/feed")

        assert exc_info.value.kind == ErrorKind.HTTP
        assert exc_info.value.status_code == 300

    def test_default_retry_policy(self):
        assert FeedFetcher().retry_policy == RetryPolicy(max_retries=3, base_delay=1.0)

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_recovers_after_transient_failure(self, mock_get):
        mock_get.side_effect = [
            requests.exceptions.Timeout("Read timed out."),
            mock_response(content=RSS_CONTENT),
        ]

        items = await FeedFetcher(retry_policy=RetryPolicy(3, 0)).fetch("https://example.com/feed")

        assert len(items) == 2
        assert mock_get.call_count == 2


class TestArticleExtraction:
    """Tests for the article text heuristic."""

    def test_article_tag(self):
        html = "<html><body><nav>Menu</nav><article><h1>Title</h1><p>Body &amp; more</p></article></body></html>"
        assert extract_article_text(html) == "Title Body & more"

    def test_main_fallback(self):
        html = "<html><body><main><p>Main content</p></main></body></html>"
        assert extract_article_text(html) == "Main content"

    def test_empty_article_falls_through_to_main(self):
        html = "<article></article><main>From main</main>"
        assert extract_article_text(html) == "From main"

    def test_article_class_div(self):
        html = '<div class="post article-body" id="x"><p>Div content</p></div><div>other</div>'
        assert extract_article_text(html) == "Div content"

    def test_strips_scripts_and_styles(self):
        html = "<article><script>var x = 1;</script><style>p { color: red; }</style><p>Visible</p></article>"
        assert extract_article_text(html) == "Visible"

    def test_unescapes_entities(self):
        html = "<article>a&nbsp;b &lt;tag&gt; &quot;quoted&quot; it&#39;s</article>"
        assert extract_article_text(html) == "a b <tag> \"quoted\" it's"

    def test_no_match(self):
        assert extract_article_text("<html><body><p>Nothing</p></body></html>") == ""

    def test_short_content_falls_back_to_url(self):
        result = render_article("<article>Too short</article>", "https://example.com/a")
        assert result == "Could not extract article content. Please visit the URL directly: https://example.com/a"

    def test_long_content_is_truncated(self):
        result = render_article(f"<article>{'x' * 6000}</article>", "https://example.com/a")
        assert result.startswith('x' * 5000 + '...')
        assert result.endswith("[Content truncated. Visit the full article for more.]")
        assert 'x' * 5001 not in result


class TestArticleFetcher:
    """Tests for article fetching with mocked HTTP."""

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_fetch_article(self, mock_get):
        body = "Paragraph one of the story. " * 10
        mock_get.return_value = mock_response(text=f"<html><article><p>{body}</p></article></html>")

        content = await ArticleFetcher(retry_policy=NO_RETRY).fetch("https://example.com/story")

        assert content == body.strip()
        headers = mock_get.call_args[1]['headers']
        assert 'Mozilla' in headers['User-Agent']

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_http_error_carries_status(self, mock_get):
        mock_get.return_value = mock_response(status_code=500, reason='Internal Server Error')

        with pytest.raises(FetchError) as exc_info:
            await ArticleFetcher(retry_policy=RetryPolicy(2, 0)).fetch("https://example.com/story")

        assert exc_info.value.message == "HTTP 500: Internal Server Error"
        assert exc_info.value.status_code == 500
        assert exc_info.value.kind == ErrorKind.HTTP
        assert mock_get.call_count == 3

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_transport_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("[Errno 111] Connection refused")

        with pytest.raises(FetchError) as exc_info:
            await ArticleFetcher(retry_policy=NO_RETRY).fetch("https://example.com/story")

        assert exc_info.value.kind == ErrorKind.CONNECTION_REFUSED
        assert exc_info.value.message == "Failed to fetch article: [Errno 111] Connection refused"

    @pytest.mark.asyncio
    @patch('feeds.requests.get')
    async def test_redirect_status_is_not_success(self, mock_get):
        body = "Paragraph one of the story. " * 10
        mock_get.return_value = mock_response(status_code=300, reason='Multiple Choices',
                                              text=f"<html><article><p>{body}</p></article></html>")

        with pytest.raises(FetchError) as exc_info:
            await ArticleFetcher(retry_policy=NO_RETRY).fetch("https://example.com/story")

        assert exc_info.value.message == "HTTP 300: Multiple Choices"
        assert exc_info.value.status_code == 300

    def test_default_retry_policy(self):
        assert ArticleFetcher().retry_policy == RetryPolicy(max_retries=2, base_delay=1.0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
