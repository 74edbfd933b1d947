"""
Feed and article retrieval for the Verge News MCP server.

- Retry executor with exponential backoff
- Feed fetcher (requests + feedparser) with error classification
- Article fetcher with a best-effort regex extraction heuristic
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse

import feedparser
import requests
from bs4 import BeautifulSoup

logger = logging.getLogger('vergenews.feeds')

T = TypeVar('T')

# =============================================================================
# FEED SOURCES
# =============================================================================

RSS_SOURCE_NAME = 'The Verge'
CUSTOM_SOURCE_NAME = 'Custom Feed'

# The Verge RSS feed URLs by category
FEED_CATEGORIES: Dict[str, str] = {
    'all': 'https://www.theverge.com/rss/index.xml',
    'tech': 'https://www.theverge.com/rss/tech/index.xml',
    'science': 'https://www.theverge.com/rss/science/index.xml',
    'reviews': 'https://www.theverge.com/rss/reviews/index.xml',
    'entertainment': 'https://www.theverge.com/rss/entertainment/index.xml',
}

DEFAULT_CATEGORY = 'all'


@dataclass(frozen=True)
class FeedSource:
    name: str
    url: str


def resolve_feed_source(category: str = DEFAULT_CATEGORY,
                        custom_url: Optional[str] = None,
                        configured_url: Optional[str] = None) -> FeedSource:
    """Pick the feed URL: per-call URL, then server URL, then category default."""
    if custom_url:
        return FeedSource(CUSTOM_SOURCE_NAME, custom_url)
    if configured_url:
        return FeedSource(CUSTOM_SOURCE_NAME, configured_url)
    if category not in FEED_CATEGORIES:
        raise KeyError(f"Unknown category: {category}")
    return FeedSource(f"{RSS_SOURCE_NAME} ({category})", FEED_CATEGORIES[category])


def validate_url(url: Any) -> Tuple[bool, str]:
    """Check that a value is an absolute http(s) URL."""
    if not url:
        return False, "URL is required"
    if not isinstance(url, str):
        return False, "URL must be a string"

    try:
        parsed = urlparse(url)
    except ValueError:
        return False, "URL parsing failed"

    if parsed.scheme not in ('http', 'https'):
        return False, "Only HTTP(S) URLs allowed"
    if not parsed.netloc:
        return False, "Invalid URL structure"

    return True, ""

# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class FeedItem:
    """One entry of a parsed feed. Absent fields stay None."""
    title: Optional[str] = None
    link: Optional[str] = None
    pub_date: Optional[str] = None
    creator: Optional[str] = None
    content_snippet: Optional[str] = None
    content: Optional[str] = None
    categories: Tuple[str, ...] = ()


# Browser-like headers to avoid access denied responses
BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
}

ARTICLE_HEADERS = {
    'User-Agent': BROWSER_HEADERS['User-Agent'],
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
}


@dataclass(frozen=True)
class FeedClientConfig:
    """HTTP settings shared by every request a fetcher makes."""
    headers: Dict[str, str] = field(default_factory=lambda: dict(BROWSER_HEADERS))
    timeout: float = 15.0


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0


FEED_RETRY_POLICY = RetryPolicy(max_retries=3, base_delay=1.0)
ARTICLE_RETRY_POLICY = RetryPolicy(max_retries=2, base_delay=1.0)

# =============================================================================
# ERRORS
# =============================================================================

class ErrorKind(str, Enum):
    DNS = 'dns'
    TIMEOUT = 'timeout'
    CONNECTION_REFUSED = 'connection_refused'
    ACCESS_DENIED = 'access_denied'
    NOT_FOUND = 'not_found'
    PARSE = 'parse'
    HTTP = 'http'
    GENERIC = 'generic'


class FetchError(Exception):
    """A failed fetch attempt, tagged with the kind of failure."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.GENERIC,
                 cause: Optional[BaseException] = None, url: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause
        self.url = url
        self.status_code = status_code


# Checked in order, first match wins
ERROR_SIGNATURES: List[Tuple[ErrorKind, Tuple[str, ...]]] = [
    (ErrorKind.DNS, (
        'ENOTFOUND', 'EAI_AGAIN', 'Name or service not known',
        'nodename nor servname', 'getaddrinfo failed',
        'Temporary failure in name resolution', 'Failed to resolve',
    )),
    (ErrorKind.TIMEOUT, ('ETIMEDOUT', 'timeout', 'timed out')),
    (ErrorKind.CONNECTION_REFUSED, ('ECONNREFUSED', 'Connection refused')),
    (ErrorKind.ACCESS_DENIED, ('403', 'Access denied')),
    (ErrorKind.NOT_FOUND, ('404',)),
]

FEED_ERROR_MESSAGES = {
    ErrorKind.DNS: "DNS resolution failed - cannot reach the server. Check your internet connection.",
    ErrorKind.TIMEOUT: "Request timed out - the server took too long to respond.",
    ErrorKind.CONNECTION_REFUSED: "Connection refused - the server is not accepting connections.",
    ErrorKind.ACCESS_DENIED: "Access denied - the server blocked the request. Try again later.",
    ErrorKind.NOT_FOUND: "Feed not found - the RSS feed URL may be incorrect.",
}

KIND_STATUS_CODES = {
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
}


def classify_fetch_error(text: str) -> ErrorKind:
    """Map raw error text to an ErrorKind."""
    for kind, signatures in ERROR_SIGNATURES:
        if any(signature in text for signature in signatures):
            return kind
    return ErrorKind.GENERIC


# Request details that requests/urllib3 embed in exception text
REQUEST_DETAIL_PATTERNS = [
    re.compile(r"host='[^']*'"),
    re.compile(r'port=\d+'),
    re.compile(r'url: \S+'),
    re.compile(r' at 0x[0-9a-fA-F]+'),
]


def strip_request_details(text: str, url: Optional[str] = None) -> str:
    """Remove the URL, host and object addresses from error text before classifying it."""
    if url:
        parsed = urlparse(url)
        for part in (url, parsed.netloc, parsed.path if len(parsed.path) > 1 else None):
            if part:
                text = text.replace(part, '')
    for pattern in REQUEST_DETAIL_PATTERNS:
        text = pattern.sub('', text)
    return text


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def feed_error_from_exception(error: BaseException, url: str) -> FetchError:
    """Wrap a transport failure from a feed request in a classified FetchError."""
    if isinstance(error, FetchError):
        return error

    error_message = str(error)
    kind = classify_fetch_error(strip_request_details(error_message, url))

    if kind in FEED_ERROR_MESSAGES:
        message = FEED_ERROR_MESSAGES[kind]
    else:
        message = f"Failed to fetch RSS feed: {error_message}"

    return FetchError(message, kind=kind, cause=error, url=url,
                      status_code=KIND_STATUS_CODES.get(kind))


def feed_error_from_status(status_code: int, url: str) -> FetchError:
    """Classify a non-2xx feed response by its status code alone."""
    kind = classify_fetch_error(f"Status code {status_code}")
    if kind not in FEED_ERROR_MESSAGES:
        kind = ErrorKind.HTTP
    message = FEED_ERROR_MESSAGES.get(kind, f"Failed to fetch RSS feed: Status code {status_code}")
    return FetchError(message, kind=kind, url=url, status_code=status_code)


def format_error_message(error: BaseException) -> str:
    """Render an error for display in a tool response."""
    if isinstance(error, FetchError):
        msg = error.message
        if error.url:
            msg += f"\n   URL: {error.url}"
        if error.status_code:
            msg += f"\n   Status: {error.status_code}"
        return msg

    if isinstance(error, asyncio.TimeoutError):
        return "Request timed out - the operation did not finish before its deadline."

    return str(error)

# =============================================================================
# RETRY EXECUTOR
# =============================================================================

async def with_retry(operation: Callable[[], Awaitable[T]],
                     policy: RetryPolicy = FEED_RETRY_POLICY,
                     context: str = 'operation') -> T:
    """
    Run an async operation, retrying failures with exponential backoff.

    Waits base_delay * 2**attempt between attempts and re-raises the last
    error once max_retries + 1 attempts have failed.
    """
    total_attempts = policy.max_retries + 1
    last_error: Optional[Exception] = None

    for attempt in range(total_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e

            if attempt < policy.max_retries:
                delay = policy.base_delay * (2 ** attempt)
                logger.warning("%s failed (attempt %d/%d), retrying in %dms...",
                               context, attempt + 1, total_attempts, delay * 1000,
                               extra={'attempt': attempt + 1,
                                      'delay_ms': delay * 1000,
                                      'error_type': getattr(e, 'kind', type(e).__name__)})
                await asyncio.sleep(delay)

    raise last_error

# =============================================================================
# FEED FETCHER
# =============================================================================

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if value else None


def html_to_text(html: Optional[str]) -> Optional[str]:
    """Plain-text rendition of an HTML fragment."""
    if not html:
        return None
    text = BeautifulSoup(html, 'lxml').get_text(separator=' ', strip=True)
    return ' '.join(text.split()) or None


def entry_to_item(entry: Any) -> FeedItem:
    """Build a FeedItem from a feedparser entry."""
    content = None
    if entry.get('content'):
        content = _text(entry.content[0].get('value'))
    if not content:
        content = _text(entry.get('summary'))

    categories = tuple(
        str(tag.get('term')) for tag in entry.get('tags', []) if tag.get('term')
    )

    return FeedItem(
        title=_text(entry.get('title')),
        link=_text(entry.get('link')),
        pub_date=_text(entry.get('published')) or _text(entry.get('updated')),
        creator=_text(entry.get('author')),
        content_snippet=html_to_text(content),
        content=content,
        categories=categories,
    )


def parse_feed(content: bytes, url: str) -> List[FeedItem]:
    """Parse a feed document into FeedItems, preserving feed order."""
    feed = feedparser.parse(content)

    if not feed.entries and not feed.get('version'):
        reason = feed.get('bozo_exception') or 'unrecognized feed format'
        raise FetchError(f"Failed to parse RSS feed: {reason}",
                         kind=ErrorKind.PARSE, url=url)

    if feed.bozo:
        logger.debug("Feed %s parsed with warnings: %s", url,
                     getattr(feed, 'bozo_exception', 'unknown'))

    return [entry_to_item(entry) for entry in feed.entries]


class FeedFetcher:
    """Fetches and parses RSS feeds with retry and error classification."""

    def __init__(self, client_config: Optional[FeedClientConfig] = None,
                 retry_policy: RetryPolicy = FEED_RETRY_POLICY):
        self.client_config = client_config or FeedClientConfig()
        self.retry_policy = retry_policy

    def _fetch_once(self, url: str) -> List[FeedItem]:
        try:
            response = requests.get(url, headers=self.client_config.headers,
                                    timeout=self.client_config.timeout,
                                    allow_redirects=True)
        except requests.RequestException as e:
            raise feed_error_from_exception(e, url) from e

        if not is_success_status(response.status_code):
            raise feed_error_from_status(response.status_code, url)

        items = parse_feed(response.content, url)
        logger.debug("Fetched %d items from %s", len(items), url,
                     extra={'url': url, 'article_count': len(items)})
        return items

    async def fetch(self, url: str) -> List[FeedItem]:
        async def attempt() -> List[FeedItem]:
            return await asyncio.to_thread(self._fetch_once, url)

        return await with_retry(attempt, self.retry_policy, context=f"Fetching {url}")

# =============================================================================
# ARTICLE FETCHER
# =============================================================================

ARTICLE_PATTERNS = [
    re.compile(r'<article[^>]*>([\s\S]*?)</article>', re.IGNORECASE),
    re.compile(r'<main[^>]*>([\s\S]*?)</main>', re.IGNORECASE),
    re.compile(r'class="[^"]*article[^"]*"[^>]*>([\s\S]*?)</div>', re.IGNORECASE),
]

SCRIPT_RE = re.compile(r'<script[^>]*>[\s\S]*?</script>', re.IGNORECASE)
STYLE_RE = re.compile(r'<style[^>]*>[\s\S]*?</style>', re.IGNORECASE)
TAG_RE = re.compile(r'<[^>]+>')
WHITESPACE_RE = re.compile(r'\s+')

# Order matters: &amp; is decoded before &lt;/&gt;
HTML_ENTITIES = [
    ('&nbsp;', ' '),
    ('&amp;', '&'),
    ('&lt;', '<'),
    ('&gt;', '>'),
    ('&quot;', '"'),
    ('&#39;', "'"),
]

MIN_ARTICLE_LENGTH = 100
MAX_ARTICLE_LENGTH = 5000
TRUNCATION_NOTICE = '...\n\n[Content truncated. Visit the full article for more.]'


def extract_article_text(html: str) -> str:
    """Best-effort plain text of the main article block in an HTML page."""
    content = ''
    for pattern in ARTICLE_PATTERNS:
        match = pattern.search(html)
        if match and match.group(1):
            content = match.group(1)
            break

    content = SCRIPT_RE.sub('', content)
    content = STYLE_RE.sub('', content)
    content = TAG_RE.sub(' ', content)
    for entity, char in HTML_ENTITIES:
        content = content.replace(entity, char)
    return WHITESPACE_RE.sub(' ', content).strip()


def render_article(html: str, url: str) -> str:
    """Extract, then apply the fallback and truncation rules."""
    content = extract_article_text(html)

    if not content or len(content) < MIN_ARTICLE_LENGTH:
        return f"Could not extract article content. Please visit the URL directly: {url}"

    if len(content) > MAX_ARTICLE_LENGTH:
        content = content[:MAX_ARTICLE_LENGTH] + TRUNCATION_NOTICE

    return content


class ArticleFetcher:
    """Fetches a single article page and extracts its readable text."""

    def __init__(self, client_config: Optional[FeedClientConfig] = None,
                 retry_policy: RetryPolicy = ARTICLE_RETRY_POLICY):
        self.client_config = client_config or FeedClientConfig(headers=dict(ARTICLE_HEADERS))
        self.retry_policy = retry_policy

    def _fetch_once(self, url: str) -> str:
        try:
            response = requests.get(url, headers=self.client_config.headers,
                                    timeout=self.client_config.timeout,
                                    allow_redirects=True)
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch article: {e}",
                             kind=classify_fetch_error(strip_request_details(str(e), url)),
                             cause=e, url=url) from e

        if not is_success_status(response.status_code):
            status = response.status_code
            kind = {403: ErrorKind.ACCESS_DENIED, 404: ErrorKind.NOT_FOUND}.get(status, ErrorKind.HTTP)
            raise FetchError(f"HTTP {status}: {response.reason}",
                             kind=kind, url=url, status_code=status)

        return render_article(response.text, url)

    async def fetch(self, url: str) -> str:
        async def attempt() -> str:
            return await asyncio.to_thread(self._fetch_once, url)

        return await with_retry(attempt, self.retry_policy,
                                context=f"Fetching article from {url}")
