"""
Tests for the HTTP wrapper.
Run with: pytest tests/test_http_server.py -v
"""
import pytest
import sys
import os

from fastapi.testclient import TestClient

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import http_server
from feeds import FeedItem, FEED_CATEGORIES
from main import ServerConfig, create_server


class StaticFeedFetcher:
    def __init__(self, items):
        self.items = items

    async def fetch(self, url):
        return list(self.items)


@pytest.fixture
def client(monkeypatch):
    items = [FeedItem(title="Undated story")]
    monkeypatch.setattr(http_server, 'mcp_server',
                        create_server(ServerConfig(), feed_fetcher=StaticFeedFetcher(items)))
    return TestClient(http_server.app)


class TestHTTPServer:
    """Tests for REST and JSON-RPC endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()['name'] == "Verge News MCP Server"

    def test_mcp_post(self, client):
        response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        assert response.status_code == 200
        names = [t['name'] for t in response.json()['result']['tools']]
        assert "get-daily-news" in names

    def test_mcp_notification(self, client):
        response = client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert response.json() == {}

    def test_mcp_parse_error(self, client):
        response = client.post("/mcp", content=b"{broken", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()['error']['code'] == -32700

    def test_categories(self, client):
        text = client.get("/api/categories").json()['content'][0]['text']
        assert FEED_CATEGORIES['reviews'] in text

    def test_daily_news(self, client):
        body = client.get("/api/daily-news", params={"category": "tech"}).json()
        assert body['content'][0]['text'] == (
            "# The Verge (tech) - Today's News\n\n"
            "No news articles found for the specified criteria."
        )

    def test_search(self, client):
        body = client.get("/api/search", params={"keyword": "story", "days": 5}).json()
        assert 'Found 0 articles matching "story" in the last 5 days.' in body['content'][0]['text']

    def test_invalid_category(self, client):
        response = client.get("/api/weekly-news", params={"category": "sports"})
        assert response.status_code == 422


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
