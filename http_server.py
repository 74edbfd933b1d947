"""
Verge News HTTP Server
An HTTP wrapper around the Verge News MCP server for external app integration.

Usage:
    python http_server.py                    # Run on default port 8000
    python http_server.py --port 3000        # Run on custom port
    uvicorn http_server:app --host 0.0.0.0   # Production with uvicorn
"""
import json
import argparse
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from main import (
    SERVER_VERSION,
    configure_logging,
    create_server,
    load_config,
    logger,
)
from protocol import INTERNAL_ERROR, PARSE_ERROR, InvalidParamsError, error_response

# =============================================================================
# FASTAPI APP SETUP
# =============================================================================

mcp_server = create_server(load_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI app."""
    logger.info("Verge News HTTP Server starting...")
    yield
    logger.info("Verge News HTTP Server shutting down...")

app = FastAPI(
    title="Verge News MCP Server",
    description="HTTP wrapper for the Verge News MCP server",
    version=SERVER_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# MCP ENDPOINT (Direct HTTP POST)
# =============================================================================

@app.post("/mcp")
async def mcp_endpoint(request: Request):
    """
    Direct MCP JSON-RPC endpoint.

    Usage:
        curl -X POST http://localhost:8000/mcp \
            -H "Content-Type: application/json" \
            -d '{"jsonrpc":"2.0","id":1,"method":"tools/list"}'
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return JSONResponse(status_code=400, content=error_response(None, PARSE_ERROR, "Parse error"))

    try:
        response = await mcp_server.handle_request(body)
        return JSONResponse(content=response if response else {})
    except Exception as e:
        logger.exception("Error handling MCP request")
        return JSONResponse(status_code=500, content=error_response(None, INTERNAL_ERROR, str(e)))

# =============================================================================
# REST API ENDPOINTS
# =============================================================================

async def call_tool(name: str, **arguments):
    arguments = {key: value for key, value in arguments.items() if value is not None}
    try:
        return await mcp_server.call_tool(name, arguments)
    except InvalidParamsError as e:
        return JSONResponse(status_code=422, content={"detail": str(e)})


@app.get("/api/categories")
async def categories_endpoint():
    """List the available feed categories."""
    return await call_tool("list-categories")


@app.get("/api/daily-news")
async def daily_news_endpoint(
    category: Optional[str] = Query(None, description="News category"),
    customUrl: Optional[str] = Query(None, description="Custom RSS feed URL"),
):
    """
    Today's news.

    Example: /api/daily-news?category=tech
    """
    return await call_tool("get-daily-news", category=category, customUrl=customUrl)


@app.get("/api/weekly-news")
async def weekly_news_endpoint(
    category: Optional[str] = Query(None, description="News category"),
    customUrl: Optional[str] = Query(None, description="Custom RSS feed URL"),
):
    return await call_tool("get-weekly-news", category=category, customUrl=customUrl)


@app.get("/api/search")
async def search_endpoint(
    keyword: str = Query(..., description="Keyword to search for"),
    days: Optional[float] = Query(None, description="Days to look back"),
    category: Optional[str] = Query(None, description="News category"),
    customUrl: Optional[str] = Query(None, description="Custom RSS feed URL"),
):
    """
    Keyword search.

    Example: /api/search?keyword=ai&days=7
    """
    return await call_tool("search-news", keyword=keyword, days=days,
                           category=category, customUrl=customUrl)


@app.get("/api/article")
async def article_endpoint(url: str = Query(..., description="Article URL")):
    return await call_tool("get-article", url=url)

# =============================================================================
# ROOT AND INFO ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Verge News MCP Server",
        "version": SERVER_VERSION,
        "description": "HTTP wrapper for the Verge News MCP server",
        "endpoints": {
            "mcp_post": "POST /mcp - Direct MCP JSON-RPC",
            "rest_categories": "GET /api/categories - List categories",
            "rest_daily": "GET /api/daily-news?category=... - Today's news",
            "rest_weekly": "GET /api/weekly-news?category=... - Weekly highlights",
            "rest_search": "GET /api/search?keyword=... - Keyword search",
            "rest_article": "GET /api/article?url=... - Article text",
        },
    }

# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Run the HTTP server."""
    parser = argparse.ArgumentParser(description="Verge News HTTP Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to run on")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    args = parser.parse_args()

    configure_logging()
    logger.info("Verge News HTTP Server listening on http://%s:%d", args.host, args.port)

    uvicorn.run(
        "http_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info"
    )


if __name__ == "__main__":
    main()
