"""Browser automation tools served over MCP to one streaming session."""

from __future__ import annotations

import base64
import json
import logging
import sys
from typing import Optional, Union

from mcp import types
from mcp.server.lowlevel import Server
from playwright.async_api import BrowserContext, Page

from ..constants import SERVER_NAME
from .urls import validate_target_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

Content = Union[types.TextContent, types.ImageContent]

TOOL_DEFINITIONS = [
    types.Tool(
        name="browser_navigate",
        description="Navigate the current tab to a URL.",
        inputSchema={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "Absolute http(s) URL."}},
            "required": ["url"],
        },
    ),
    types.Tool(
        name="browser_snapshot",
        description="Return the current page content as Markdown.",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="browser_click",
        description="Click the first element matching a CSS selector.",
        inputSchema={
            "type": "object",
            "properties": {"selector": {"type": "string"}},
            "required": ["selector"],
        },
    ),
    types.Tool(
        name="browser_type",
        description="Fill text into an input. Optionally press Enter afterwards.",
        inputSchema={
            "type": "object",
            "properties": {
                "selector": {"type": "string"},
                "text": {"type": "string"},
                "submit": {"type": "boolean", "default": False},
            },
            "required": ["selector", "text"],
        },
    ),
    types.Tool(
        name="browser_press_key",
        description="Press a keyboard key, e.g. Enter or ArrowDown.",
        inputSchema={
            "type": "object",
            "properties": {"key": {"type": "string"}},
            "required": ["key"],
        },
    ),
    types.Tool(
        name="browser_navigate_back",
        description="Go back to the previous page.",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="browser_take_screenshot",
        description="Capture a PNG screenshot of the current tab.",
        inputSchema={
            "type": "object",
            "properties": {"full_page": {"type": "boolean", "default": False}},
        },
    ),
    types.Tool(
        name="browser_wait_for",
        description="Wait for text to appear or for a number of seconds.",
        inputSchema={
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "time": {"type": "number", "description": "Seconds to wait (max 30)."},
            },
        },
    ),
    types.Tool(
        name="browser_tab_list",
        description="List open tabs with their URL and title.",
        inputSchema={"type": "object", "properties": {}},
    ),
]


class BrowserToolbox:
    """Executes browser tools against one session's persistent context.

    Failures raise; the MCP server turns them into ``isError`` results.
    """

    def __init__(self, context: BrowserContext, navigation_timeout_ms: int = 15_000):
        self.context = context
        self.navigation_timeout_ms = navigation_timeout_ms
        self._page: Optional[Page] = None

    async def page(self) -> Page:
        if self._page is not None and not self._page.is_closed():
            return self._page
        pages = [p for p in self.context.pages if not p.is_closed()]
        self._page = pages[-1] if pages else await self.context.new_page()
        return self._page

    async def call(self, name: str, arguments: Optional[dict] = None) -> list[Content]:
        handler = getattr(self, f"_tool_{name.removeprefix('browser_')}", None)
        if handler is None or not name.startswith("browser_"):
            raise ValueError(f"Unknown tool: {name}")
        logger.info(f"Tool call: {name}")
        return await handler(**(arguments or {}))

    async def _tool_navigate(self, url: str) -> list[Content]:
        target = validate_target_url(url)
        page = await self.page()
        response = await page.goto(
            target, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms
        )
        status = response.status if response is not None else "no response"
        return [_text(f"Navigated to {page.url} (status {status})")]

    async def _tool_snapshot(self) -> list[Content]:
        page = await self.page()
        return [_text(await page.content())]

    async def _tool_click(self, selector: str) -> list[Content]:
        page = await self.page()
        await page.click(selector, timeout=self.navigation_timeout_ms)
        return [_text(f"Clicked {selector}")]

    async def _tool_type(self, selector: str, text: str, submit: bool = False) -> list[Content]:
        page = await self.page()
        await page.fill(selector, text, timeout=self.navigation_timeout_ms)
        if submit:
            await page.press(selector, "Enter")
        return [_text(f"Typed {len(text)} characters into {selector}")]

    async def _tool_press_key(self, key: str) -> list[Content]:
        page = await self.page()
        await page.keyboard.press(key)
        return [_text(f"Pressed {key}")]

    async def _tool_navigate_back(self) -> list[Content]:
        page = await self.page()
        response = await page.go_back(timeout=self.navigation_timeout_ms)
        if response is None:
            return [_text("No previous page")]
        return [_text(f"Navigated back to {page.url}")]

    async def _tool_take_screenshot(self, full_page: bool = False) -> list[Content]:
        page = await self.page()
        data = await page.screenshot(full_page=full_page, type="png")
        return [
            types.ImageContent(
                type="image", data=base64.b64encode(data).decode("ascii"), mimeType="image/png"
            )
        ]

    async def _tool_wait_for(self, text: Optional[str] = None, time: Optional[float] = None) -> list[Content]:
        page = await self.page()
        if text:
            await page.get_by_text(text).first.wait_for(timeout=self.navigation_timeout_ms)
            return [_text(f"Found text: {text}")]
        seconds = max(0.0, min(float(time or 1), 30.0))
        await page.wait_for_timeout(seconds * 1000)
        return [_text(f"Waited {seconds:g}s")]

    async def _tool_tab_list(self) -> list[Content]:
        tabs = []
        for index, page in enumerate(self.context.pages):
            if page.is_closed():
                continue
            tabs.append({"index": index, "url": page.url, "title": await page.title()})
        return [_text(json.dumps(tabs, indent=2))]


def _text(text: str) -> types.TextContent:
    return types.TextContent(type="text", text=text)


def build_tool_server(toolbox: BrowserToolbox) -> Server:
    """Create the MCP server exposing ``toolbox`` to one client."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return list(TOOL_DEFINITIONS)

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[Content]:
        return await toolbox.call(name, arguments)

    return server
