"""In-memory stand-ins for the Playwright objects the relay touches."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from browser_relay.session_manager.browser import BrowserHandle, ContextHandle, LaunchConfig

EXAMPLE_HTML = """
<html>
  <head><title>Example Domain</title></head>
  <body>
    <nav><a href="/">Home</a></nav>
    <main>
      <h1>Example Domain</h1>
      <p>This domain is for use in illustrative examples in documents.</p>
    </main>
    <footer>Footer links</footer>
  </body>
</html>
"""

EXAMPLE_METADATA = {
    "title": "Example Domain",
    "description": "An example page",
    "keywords": None,
    "author": None,
    "canonicalUrl": None,
    "url": "https://example.com/",
    "lastModified": "01/01/2024 00:00:00",
}


class FakeResponse:
    def __init__(self, status: int = 200, headers: Optional[dict] = None):
        self.status = status
        self.headers = headers or {"content-type": "text/html"}


class FakeKeyboard:
    def __init__(self):
        self.pressed: list[str] = []

    async def press(self, key: str):
        self.pressed.append(key)


class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.url = "about:blank"
        self.keyboard = FakeKeyboard()
        self.goto_calls: list[str] = []
        self.actions: list[tuple] = []
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def goto(self, url: str, **kwargs):
        self.goto_calls.append(url)
        outcome = self.context.browser.next_outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return None
        self.url = url
        return FakeResponse(outcome)

    async def go_back(self, **kwargs):
        return None

    async def wait_for_timeout(self, ms):
        self.actions.append(("wait", ms))

    async def evaluate(self, script, *args):
        return dict(self.context.browser.metadata)

    async def content(self) -> str:
        return self.context.browser.html

    async def title(self) -> str:
        return self.context.browser.metadata.get("title", "")

    async def click(self, selector, **kwargs):
        self.actions.append(("click", selector))

    async def fill(self, selector, text, **kwargs):
        self.actions.append(("fill", selector, text))

    async def press(self, selector, key, **kwargs):
        self.actions.append(("press", selector, key))

    async def screenshot(self, **kwargs) -> bytes:
        return b"\x89PNG fake"

    async def close(self):
        self._closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", options: Optional[dict] = None):
        self.browser = browser
        self.options = options or {}
        self.pages: list[FakePage] = []
        self.init_scripts: list[str] = []
        self.routes: list[tuple] = []
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self):
        self.close_calls += 1
        if self.browser.fail_on_context_close:
            raise RuntimeError("context already gone")


class FakeBrowser:
    """Shared by every context it creates; ``outcomes`` drive ``page.goto``.

    Each outcome is an HTTP status, ``None`` (no response) or an exception.
    When the list runs out every navigation answers 200.
    """

    def __init__(self, outcomes: Optional[list] = None, html: str = EXAMPLE_HTML):
        self.outcomes = outcomes if outcomes is not None else []
        self.html = html
        self.metadata = dict(EXAMPLE_METADATA)
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False
        self.fail_on_context_close = False

    def next_outcome(self):
        if self.outcomes:
            return self.outcomes.pop(0)
        return 200

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options) -> FakeContext:
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakeLauncher:
    """Counts launches and hands out ``FakeBrowser`` handles.

    ``outcomes`` is shared across every browser so a test can script the
    whole navigation history of a scrape, including a direct-connection
    fallback on a second browser.
    """

    def __init__(self, outcomes: Optional[list] = None, launch_delay: float = 0.0):
        self.outcomes = outcomes if outcomes is not None else []
        self.launch_delay = launch_delay
        self.launch_configs: list[LaunchConfig] = []
        self.browsers: list[FakeBrowser] = []
        self.persistent: list[FakeContext] = []
        self.fail_with: Optional[Exception] = None
        self.fail_when_proxied: Optional[Exception] = None

    @property
    def launches(self) -> int:
        return len(self.launch_configs)

    async def launch(self, config: LaunchConfig) -> BrowserHandle:
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.fail_when_proxied is not None and config.proxy is not None:
            raise self.fail_when_proxied
        self.launch_configs.append(config)
        browser = FakeBrowser(self.outcomes)
        self.browsers.append(browser)
        return BrowserHandle(browser, browser.close, "fake")

    async def launch_persistent(self, profile_dir: Path, config: LaunchConfig, context_options=None) -> ContextHandle:
        if self.fail_with is not None:
            raise self.fail_with
        self.launch_configs.append(config)
        browser = FakeBrowser(self.outcomes)
        self.browsers.append(browser)
        context = FakeContext(browser, context_options)
        context.pages.append(FakePage(context))
        self.persistent.append(context)

        async def closer():
            await context.close()
            await browser.close()

        return ContextHandle(context, closer, profile_dir)
