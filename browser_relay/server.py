"""MCP stdio entry point for the browser relay.

Exposes the relay's one-shot scraping to MCP clients that speak stdio:
- scrape_url: fetch a page and return Markdown
- relay_status: health of the relay, its browser and sessions

The relay HTTP service is auto-started as part of the MCP server lifecycle
unless one is already listening on the configured port.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import RELAY_HOST, RELAY_PORT
from .tools.relay_tools import relay_status, scrape_url

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("browser-relay")


# ── Lifespan: auto-start the relay ───────────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the relay HTTP service alongside the MCP server."""
    from .session_manager.manager import create_app

    app = create_app()
    runner = AppRunner(app, handler_cancellation=True)
    await runner.setup()
    site = TCPSite(runner, RELAY_HOST, RELAY_PORT)
    managed = False
    try:
        await site.start()
        logger.info("Browser relay auto-started on %s:%s", RELAY_HOST, RELAY_PORT)
        managed = True
    except OSError:
        # Port already in use, assume the relay was started separately
        logger.info("Browser relay already running on %s:%s", RELAY_HOST, RELAY_PORT)
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Browser relay stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "browser-relay",
    lifespan=lifespan,
    instructions=(
        "Browser Relay - fetch web pages through a headless browser and get clean Markdown. "
        "The relay starts automatically with this server. "
        "Use scrape_url to fetch a page; use relay_status to check the browser and proxy."
    ),
)


@mcp.tool()
async def tool_scrape_url(
    url: str,
    use_proxy: bool = True,
    proxy: str = "",
    normalizer: str = "",
    include_metadata: bool = True,
) -> str:
    """Fetch a web page in a headless browser and return it as Markdown.

    Args:
        url: Absolute http(s) URL to fetch.
        use_proxy: Route through the configured upstream proxy (default True).
        proxy: Optional per-request proxy, username:password@host:port.
        normalizer: "basic" keeps the whole page, "semantic" keeps main content.
        include_metadata: Prepend title, description and fetch stats.
    """
    return await scrape_url(url, use_proxy, proxy, normalizer, include_metadata)


@mcp.tool()
async def tool_relay_status() -> str:
    """Check relay health: active sessions, browser state and proxy setup."""
    return await relay_status()


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting Browser Relay MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
