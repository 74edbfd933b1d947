"""
Filter and formatting pipeline for feed items.
"""
import random
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Sequence

from feeds import FeedItem

# =============================================================================
# DATE PARSING
# =============================================================================

DATE_FORMATS = [
    '%Y-%m-%dT%H:%M:%S%z',
    '%Y-%m-%dT%H:%M:%SZ',
    '%Y-%m-%dT%H:%M:%S.%f%z',
    '%Y-%m-%dT%H:%M:%S.%fZ',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%d %H:%M:%S%z',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d',
    '%d %b %Y %H:%M:%S %z',
    '%d %b %Y %H:%M:%S',
    '%d %b %Y',
    '%d %B %Y',
    '%B %d, %Y',
    '%b %d, %Y',
    '%Y/%m/%d',
]


def parse_pub_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 or ISO-like date string. Returns None when unparseable."""
    if not date_str or not isinstance(date_str, str):
        return None

    date_str = date_str.strip()
    if not date_str:
        return None

    dt = None
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError):
        dt = None

    if dt is None:
        for fmt in DATE_FORMATS:
            try:
                dt = datetime.strptime(date_str, fmt)
                break
            except ValueError:
                continue

    if dt is None:
        try:
            dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
        except ValueError:
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

# =============================================================================
# FILTERS
# =============================================================================

def filter_news_by_date(items: Sequence[FeedItem], days_back: float,
                        now: Optional[datetime] = None) -> List[FeedItem]:
    """Keep items published within the last `days_back` days."""
    now = now or datetime.now(timezone.utc)
    try:
        cutoff = now - timedelta(days=days_back)
    except OverflowError:
        cutoff = datetime.min.replace(tzinfo=timezone.utc)

    recent = []
    for item in items:
        published = parse_pub_date(item.pub_date)
        if published is not None and published >= cutoff:
            recent.append(item)
    return recent


def filter_news_by_keyword(items: Sequence[FeedItem], keyword: str) -> List[FeedItem]:
    """Case-insensitive substring match on title or content."""
    lower_keyword = keyword.lower()

    matches = []
    for item in items:
        title = (item.title or '').lower()
        content = (item.content_snippet or item.content or '').lower()
        if lower_keyword in title or lower_keyword in content:
            matches.append(item)
    return matches


def pick_random_items(items: Sequence[FeedItem], count: int = 10,
                      rng: Optional[random.Random] = None) -> List[FeedItem]:
    """
    Pick `count` distinct items uniformly at random.

    When there are no more items than requested, all of them come back in
    their original order. Otherwise a partial Fisher-Yates shuffle over the
    index pool selects the subset, returned in random order.
    """
    if len(items) <= count:
        return list(items)

    rng = rng or random
    pool = list(range(len(items)))
    picked = []
    for i in range(max(count, 0)):
        j = rng.randrange(i, len(pool))
        pool[i], pool[j] = pool[j], pool[i]
        picked.append(items[pool[i]])
    return picked

# =============================================================================
# FORMATTING
# =============================================================================

SUMMARY_LENGTH = 150
NO_ARTICLES_MESSAGE = "No news articles found for the specified criteria."


def format_news_items(items: Sequence[FeedItem]) -> List[Dict]:
    """Display records with placeholder text for missing fields."""
    return [
        {
            'title': item.title or "No title",
            'link': item.link or "#",
            'pub_date': item.pub_date or "Unknown date",
            'creator': item.creator or "Unknown author",
            'content': item.content_snippet or item.content or "No content available",
            'categories': list(item.categories),
        }
        for item in items
    ]


def format_news_as_brief_summary(records: Sequence[Dict], limit: int = 10) -> str:
    if not records:
        return NO_ARTICLES_MESSAGE

    blocks = []
    for index, record in enumerate(records[:limit], start=1):
        content = record['content']
        summary = content[:SUMMARY_LENGTH].strip()
        if len(content) > SUMMARY_LENGTH:
            summary += "..."

        blocks.append(
            f"\n{index}. {record['title']}\n"
            f"   Published: {record['pub_date']}\n"
            f"   Author: {record['creator']}\n"
            f"   Link: {record['link']}\n"
            f"   Summary: {summary}\n"
        )

    return "\n---\n".join(blocks)
