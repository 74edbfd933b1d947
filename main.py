"""
Verge News MCP Server
A STDIO MCP server for fetching, filtering and summarizing RSS news.

Features:
- Daily, weekly and keyword-search views over The Verge (or any RSS feed)
- Full article text retrieval
- Retry with exponential backoff and classified fetch errors
- Structured JSON logging on stderr
- Bounded per-call deadline
"""
import sys
import os
import io
import json
import logging
import argparse
import asyncio
import re
import time
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from feeds import (
    ARTICLE_HEADERS,
    ArticleFetcher,
    FeedClientConfig,
    FeedFetcher,
    FEED_CATEGORIES,
    RSS_SOURCE_NAME,
    DEFAULT_CATEGORY,
    format_error_message,
    resolve_feed_source,
    validate_url,
)
from filters import (
    filter_news_by_date,
    filter_news_by_keyword,
    format_news_as_brief_summary,
    format_news_items,
    pick_random_items,
)
from protocol import (
    INTERNAL_ERROR,
    PARSE_ERROR,
    InvalidParamsError,
    McpServer,
    error_response,
    text_result,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

SERVER_NAME = "verge-news"
SERVER_VERSION = "1.0.0"

# Environment variables with defaults
LOG_LEVEL = os.environ.get('VERGE_NEWS_LOG_LEVEL', 'INFO')
CUSTOM_RSS_URL = os.environ.get('VERGE_NEWS_CUSTOM_RSS_URL') or None
FEED_TIMEOUT_MS = int(os.environ.get('VERGE_NEWS_FEED_TIMEOUT_MS', '15000'))
TOOL_TIMEOUT_SECONDS = float(os.environ.get('VERGE_NEWS_TOOL_TIMEOUT', '90'))

DAILY_DAYS = 1
WEEKLY_DAYS = 7
DEFAULT_SEARCH_DAYS = 30
MAX_RESULTS = 10
DEFAULT_PROMPT_DAYS = 7


@dataclass(frozen=True)
class ServerConfig:
    custom_rss_url: Optional[str] = None
    feed_timeout: float = FEED_TIMEOUT_MS / 1000
    tool_timeout: float = TOOL_TIMEOUT_SECONDS


def load_config(custom_rss_url: Optional[str] = CUSTOM_RSS_URL,
                feed_timeout: float = FEED_TIMEOUT_MS / 1000,
                tool_timeout: float = TOOL_TIMEOUT_SECONDS) -> ServerConfig:
    """Validate settings and build the server configuration."""
    if custom_rss_url:
        valid, error = validate_url(custom_rss_url)
        if not valid:
            raise ValueError(f"Invalid custom RSS URL {custom_rss_url!r}: {error}")

    if feed_timeout <= 0 or tool_timeout <= 0:
        raise ValueError("Timeouts must be positive")

    return ServerConfig(custom_rss_url=custom_rss_url or None,
                        feed_timeout=feed_timeout,
                        tool_timeout=tool_timeout)

# =============================================================================
# LOGGING SETUP
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """JSON-structured logging formatter for observability."""

    EXTRA_FIELDS = ('url', 'tool', 'attempt', 'delay_ms', 'duration_ms',
                    'article_count', 'error_type')

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        # Add extra fields if present
        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Send structured logs to STDERR; STDOUT carries the protocol."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )


logger = logging.getLogger('vergenews')

# =============================================================================
# ARGUMENT VALIDATION
# =============================================================================

def validate_category(category: Any) -> str:
    if category is None:
        return DEFAULT_CATEGORY
    if not isinstance(category, str) or category not in FEED_CATEGORIES:
        raise InvalidParamsError(
            f"category must be one of: {', '.join(FEED_CATEGORIES)}"
        )
    return category


def validate_optional_url(url: Any, name: str) -> Optional[str]:
    if url is None:
        return None
    valid, error = validate_url(url)
    if not valid:
        raise InvalidParamsError(f"{name}: {error}")
    return url


def validate_days(days: Any, default: float) -> float:
    if days is None:
        return default
    if isinstance(days, bool) or not isinstance(days, (int, float)):
        raise InvalidParamsError("days must be a number")
    return days


def format_days(days: float) -> str:
    if isinstance(days, float) and days.is_integer():
        return str(int(days))
    return str(days)


def parse_prompt_days(days: Optional[str]) -> int:
    """Leading integer of the prompt's days argument, else the default."""
    if not days:
        return DEFAULT_PROMPT_DAYS
    match = re.match(r'\s*([+-]?\d+)', str(days))
    return int(match.group(1)) if match else DEFAULT_PROMPT_DAYS

# =============================================================================
# SERVER
# =============================================================================

CATEGORY_PROPERTY = {
    "type": "string",
    "enum": list(FEED_CATEGORIES),
    "description": "News category to filter by (default: all)",
}

CUSTOM_URL_PROPERTY = {
    "type": "string",
    "format": "uri",
    "description": f"Custom RSS feed URL to fetch from instead of {RSS_SOURCE_NAME}",
}


def create_server(config: Optional[ServerConfig] = None,
                  feed_fetcher: Optional[FeedFetcher] = None,
                  article_fetcher: Optional[ArticleFetcher] = None) -> McpServer:
    """Build the MCP server with its tools, resource and prompt registered."""
    config = config or ServerConfig()
    client_config = FeedClientConfig(timeout=config.feed_timeout)
    feed_fetcher = feed_fetcher or FeedFetcher(client_config)
    article_fetcher = article_fetcher or ArticleFetcher(
        FeedClientConfig(headers=dict(ARTICLE_HEADERS),
                         timeout=config.feed_timeout)
    )

    server = McpServer(SERVER_NAME, SERVER_VERSION)

    async def run_with_deadline(coro):
        return await asyncio.wait_for(coro, timeout=config.tool_timeout)

    def tool_failed(tool: str, prefix: str, error: Exception, suffix: str = "") -> Dict:
        logger.error("Error in %s: %s", tool, format_error_message(error),
                     extra={'tool': tool, 'error_type': getattr(error, 'kind', type(error).__name__)})
        return text_result(f"{prefix}:\n{format_error_message(error)}{suffix}", is_error=True)

    async def fetch_source(category: str, custom_url: Optional[str]):
        source = resolve_feed_source(category, custom_url, config.custom_rss_url)
        start_time = time.time()
        items = await feed_fetcher.fetch(source.url)
        logger.info("Fetched %d items from %s", len(items), source.url,
                    extra={'url': source.url, 'article_count': len(items),
                           'duration_ms': round((time.time() - start_time) * 1000, 2)})
        return source, items

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    @server.tool(
        "get-daily-news",
        f"Get the latest news from {RSS_SOURCE_NAME} for today. Supports category filtering.",
        {"category": CATEGORY_PROPERTY, "customUrl": CUSTOM_URL_PROPERTY},
    )
    async def get_daily_news(category: Optional[str] = None, customUrl: Optional[str] = None) -> Dict:
        category = validate_category(category)
        custom_url = validate_optional_url(customUrl, "customUrl")

        async def pipeline() -> str:
            source, items = await fetch_source(category, custom_url)
            today = filter_news_by_date(items, DAILY_DAYS)
            news_text = format_news_as_brief_summary(format_news_items(today), MAX_RESULTS)
            return f"# {source.name} - Today's News\n\n{news_text}"

        try:
            return text_result(await run_with_deadline(pipeline()))
        except Exception as e:
            return tool_failed("get-daily-news", "Error fetching daily news", e)

    @server.tool(
        "get-weekly-news",
        f"Get news from {RSS_SOURCE_NAME} for the past week. Supports category filtering.",
        {"category": CATEGORY_PROPERTY, "customUrl": CUSTOM_URL_PROPERTY},
    )
    async def get_weekly_news(category: Optional[str] = None, customUrl: Optional[str] = None) -> Dict:
        category = validate_category(category)
        custom_url = validate_optional_url(customUrl, "customUrl")

        async def pipeline() -> str:
            source, items = await fetch_source(category, custom_url)
            weekly = pick_random_items(filter_news_by_date(items, WEEKLY_DAYS), MAX_RESULTS)
            news_text = format_news_as_brief_summary(format_news_items(weekly))
            return f"# {source.name} - Weekly News Highlights\n\n{news_text}"

        try:
            return text_result(await run_with_deadline(pipeline()))
        except Exception as e:
            return tool_failed("get-weekly-news", "Error fetching weekly news", e)

    @server.tool(
        "search-news",
        f"Search for news articles from {RSS_SOURCE_NAME} by keyword. Supports category filtering.",
        {
            "keyword": {"type": "string", "description": "Keyword to search for in news articles"},
            "days": {"type": "number", "description": "Number of days to look back (default: 30)"},
            "category": CATEGORY_PROPERTY,
            "customUrl": CUSTOM_URL_PROPERTY,
        },
        required=["keyword"],
    )
    async def search_news(keyword: str, days: Optional[float] = None,
                          category: Optional[str] = None, customUrl: Optional[str] = None) -> Dict:
        if not isinstance(keyword, str):
            raise InvalidParamsError("keyword must be a string")
        days = validate_days(days, DEFAULT_SEARCH_DAYS)
        category = validate_category(category)
        custom_url = validate_optional_url(customUrl, "customUrl")

        async def pipeline() -> str:
            source, items = await fetch_source(category, custom_url)
            matches = filter_news_by_keyword(filter_news_by_date(items, days), keyword)
            news_text = format_news_as_brief_summary(format_news_items(matches), MAX_RESULTS)
            return (
                f'# {source.name} - Search Results for "{keyword}"\n\n'
                f'Found {len(matches)} articles matching "{keyword}" in the last {format_days(days)} days.\n\n'
                f'{news_text}'
            )

        try:
            return text_result(await run_with_deadline(pipeline()))
        except Exception as e:
            return tool_failed("search-news", "Error searching news", e)

    @server.tool(
        "get-article",
        "Fetch the full content of a news article by its URL",
        {"url": {"type": "string", "format": "uri", "description": "The URL of the article to fetch"}},
        required=["url"],
    )
    async def get_article(url: str) -> Dict:
        url = validate_optional_url(url, "url")

        try:
            content = await run_with_deadline(article_fetcher.fetch(url))
            return text_result(f"# Article Content\n\nURL: {url}\n\n---\n\n{content}")
        except Exception as e:
            return tool_failed("get-article", "Error fetching article", e,
                               f"\n\nYou can try visiting the URL directly: {url}")

    @server.tool("list-categories", f"List available news categories for {RSS_SOURCE_NAME}")
    async def list_categories() -> Dict:
        category_list = '\n'.join(
            f"- **{category}**: {url}" for category, url in FEED_CATEGORIES.items()
        )
        return text_result(
            f"# Available {RSS_SOURCE_NAME} Categories\n\n{category_list}\n\n"
            "Use the `category` parameter in other tools to filter by category."
        )

    # -------------------------------------------------------------------------
    # Resource and prompt
    # -------------------------------------------------------------------------

    @server.resource("news-archive", "news://archive")
    async def news_archive(uri: str) -> Dict:
        return {"contents": [{"uri": uri, "text": "This would be an archive of news articles"}]}

    @server.prompt(
        "news-summary",
        f"Summarize news from {RSS_SOURCE_NAME} for a specified period",
        [
            {"name": "days", "description": "Number of days to summarize (default: 7)", "required": False},
            {"name": "category", "description": "Category to summarize (default: all)", "required": False},
        ],
    )
    def news_summary(arguments: Dict[str, str]) -> Dict:
        days = parse_prompt_days(arguments.get('days'))
        category = arguments.get('category') or DEFAULT_CATEGORY
        return {
            "messages": [{
                "role": "user",
                "content": {
                    "type": "text",
                    "text": f"Please summarize the {category} news from {RSS_SOURCE_NAME} from the past {days} days.",
                },
            }]
        }

    return server

# =============================================================================
# STDIO LOOP
# =============================================================================

def write_message(message: Dict) -> None:
    print(json.dumps(message, ensure_ascii=False), flush=True)


async def process_line(server: McpServer, line: str) -> Optional[Dict]:
    """Decode one JSON-RPC line and produce its response, if any."""
    try:
        request = json.loads(line)
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON received: %s", str(e))
        return error_response(None, PARSE_ERROR, "Parse error: Invalid JSON")

    try:
        return await server.handle_request(request)
    except Exception:
        logger.exception("Unexpected error processing request")
        id_ = request.get('id') if isinstance(request, dict) else None
        return error_response(id_, INTERNAL_ERROR, "Internal server error")


def start_line_reader(stream, loop: asyncio.AbstractEventLoop,
                      queue: asyncio.Queue) -> threading.Thread:
    """
    Read lines from a blocking stream on a daemon thread and hand them to
    the event loop. An empty string marks end of input. The thread never
    holds up interpreter exit while blocked in readline().
    """
    def read_lines():
        try:
            for line in iter(stream.readline, ''):
                loop.call_soon_threadsafe(queue.put_nowait, line)
            loop.call_soon_threadsafe(queue.put_nowait, '')
        except RuntimeError:
            # loop already closed
            return

    reader = threading.Thread(target=read_lines, name='stdin-reader', daemon=True)
    reader.start()
    return reader


async def serve(server: McpServer, stream=None) -> None:
    """Read requests line by line; each one is handled in its own task."""
    stream = stream or sys.stdin
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    pending = set()

    async def respond(line: str) -> None:
        response = await process_line(server, line)
        if response is not None:
            write_message(response)

    start_line_reader(stream, loop, lines)

    while True:
        line = await lines.get()
        if not line:
            break
        line = line.strip()
        if not line:
            continue

        task = asyncio.create_task(respond(line))
        pending.add(task)
        task.add_done_callback(pending.discard)

    if pending:
        await asyncio.gather(*pending)

# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verge News MCP Server (stdio)")
    parser.add_argument("--custom-rss-url", default=CUSTOM_RSS_URL,
                        help=f"RSS feed URL to use instead of {RSS_SOURCE_NAME}")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point - STDIO MCP server loop."""
    # Fix Windows console encoding for Unicode output
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8', errors='replace')
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8', errors='replace')

    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(custom_rss_url=args.custom_rss_url)
        server = create_server(config)
        logger.info("Verge News MCP Server v%s running on stdio", SERVER_VERSION)
        logger.info("Configuration: feed=%s, request timeout=%.1fs, tool timeout=%.1fs",
                    config.custom_rss_url or RSS_SOURCE_NAME, config.feed_timeout, config.tool_timeout)
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("Verge News MCP Server stopped by user")
    except Exception:
        logger.exception("Fatal error in main()")
        sys.exit(1)


if __name__ == '__main__':
    main()
