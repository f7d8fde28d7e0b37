"""Browser launch and lifecycle: per-request browsers and a pooled, lock-guarded browser."""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import Browser, BrowserContext, async_playwright

from ..config import ProxySettings, RelayConfig
from ..constants import (
    BASE_VIEWPORT,
    CHROMIUM_ARGS,
    DEFAULT_LOCALE,
    DEFAULT_TIMEZONE,
    EXTRA_HTTP_HEADERS,
    IGNORE_DEFAULT_ARGS,
    USER_AGENTS,
    VIEWPORT_JITTER,
)
from ..errors import BrowserLaunchError, ResourceBusyError
from ..models.session import BrowserSnapshot, BrowserState

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

Closer = Callable[[], Awaitable[None]]

CAMOUFOX_FINGERPRINT_KEYS = ("user_agent", "viewport")


@dataclass
class LaunchConfig:
    engine: str = "chromium"
    headless: bool = True
    proxy: Optional[ProxySettings] = None
    args: list[str] = field(default_factory=lambda: list(CHROMIUM_ARGS))
    launch_timeout_ms: int = 60_000
    downloads_dir: Optional[Path] = None

    def without_proxy(self) -> "LaunchConfig":
        return LaunchConfig(
            engine=self.engine,
            headless=self.headless,
            proxy=None,
            args=list(self.args),
            launch_timeout_ms=self.launch_timeout_ms,
            downloads_dir=self.downloads_dir,
        )


async def close_quietly(target: Any, what: str = "context") -> None:
    """Close a Playwright object, logging instead of raising."""
    if target is None:
        return
    try:
        await target.close()
    except Exception as e:
        logger.warning(f"Error closing {what}: {e}")


class BrowserHandle:
    """A live browser process or remote CDP connection plus its driver."""

    def __init__(self, browser: Browser, closer: Closer, description: str = "chromium"):
        self.browser = browser
        self.description = description
        self._closer = closer
        self._closed = False

    def is_connected(self) -> bool:
        if self._closed:
            return False
        try:
            return bool(self.browser.is_connected())
        except Exception:
            return False

    async def new_context(self, **options) -> BrowserContext:
        return await self.browser.new_context(**options)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._closer()
        except Exception as e:
            logger.warning(f"Error closing browser ({self.description}): {e}")


class ContextHandle:
    """A persistent context bound to one profile directory."""

    def __init__(self, context: BrowserContext, closer: Closer, profile_dir: Path):
        self.context = context
        self.profile_dir = profile_dir
        self._closer = closer
        self._closed = False

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._closer()
        except Exception as e:
            logger.warning(f"Error closing persistent context for {self.profile_dir.name}: {e}")


class BrowserLauncher:
    """Starts Chromium, Camoufox, or a remote CDP connection."""

    async def launch(self, config: LaunchConfig) -> BrowserHandle:
        if config.engine == "camoufox":
            return await self._launch_camoufox(config)

        playwright = None
        try:
            playwright = await async_playwright().start()
            if config.proxy and config.proxy.is_remote:
                logger.info(f"Connecting to remote browser at {config.proxy.describe()}")
                browser = await playwright.chromium.connect_over_cdp(
                    config.proxy.ws_endpoint, timeout=config.launch_timeout_ms
                )
                description = "remote"
            else:
                logger.info(f"Launching Chromium (headless={config.headless})")
                browser = await playwright.chromium.launch(**self._chromium_options(config))
                description = "chromium"
        except Exception as e:
            await _stop_playwright(playwright)
            raise BrowserLaunchError("Failed to launch browser", details=str(e)) from e

        async def closer():
            try:
                await browser.close()
            finally:
                await _stop_playwright(playwright)

        return BrowserHandle(browser, closer, description)

    async def launch_persistent(
        self,
        profile_dir: Path,
        config: LaunchConfig,
        context_options: Optional[dict] = None,
    ) -> ContextHandle:
        """Launch a browser whose storage lives in ``profile_dir``."""
        options = dict(context_options or {})

        if config.engine == "camoufox":
            # Camoufox generates its own user agent and screen.
            for key in CAMOUFOX_FINGERPRINT_KEYS:
                options.pop(key, None)
            camoufox = AsyncCamoufox(
                headless=config.headless,
                persistent_context=True,
                user_data_dir=str(profile_dir),
                proxy=config.proxy.to_playwright() if config.proxy and not config.proxy.is_remote else None,
                geoip=bool(config.proxy and not config.proxy.is_remote),
                humanize=True,
                i_know_what_im_doing=True,
                **options,
            )
            try:
                context = await camoufox.__aenter__()
            except Exception as e:
                raise BrowserLaunchError("Failed to launch Camoufox", details=str(e)) from e

            async def camoufox_closer():
                await camoufox.__aexit__(None, None, None)

            return ContextHandle(context, camoufox_closer, profile_dir)

        playwright = None
        try:
            playwright = await async_playwright().start()
            launch_options = self._chromium_options(config)
            launch_options.update(options)
            context = await playwright.chromium.launch_persistent_context(
                str(profile_dir), **launch_options
            )
        except Exception as e:
            await _stop_playwright(playwright)
            raise BrowserLaunchError("Failed to launch persistent browser", details=str(e)) from e

        async def closer():
            try:
                await context.close()
            finally:
                await _stop_playwright(playwright)

        logger.info(f"Launched persistent browser for profile {profile_dir.name}")
        return ContextHandle(context, closer, profile_dir)

    async def _launch_camoufox(self, config: LaunchConfig) -> BrowserHandle:
        logger.info(f"Launching Camoufox (headless={config.headless})")
        camoufox = AsyncCamoufox(
            headless=config.headless,
            proxy=config.proxy.to_playwright() if config.proxy and not config.proxy.is_remote else None,
            geoip=bool(config.proxy and not config.proxy.is_remote),
            humanize=True,
            i_know_what_im_doing=True,
        )
        try:
            browser = await camoufox.__aenter__()
        except Exception as e:
            raise BrowserLaunchError("Failed to launch Camoufox", details=str(e)) from e

        async def closer():
            await camoufox.__aexit__(None, None, None)

        return BrowserHandle(browser, closer, "camoufox")

    @staticmethod
    def _chromium_options(config: LaunchConfig) -> dict:
        options = {
            "headless": config.headless,
            "args": list(config.args),
            "ignore_default_args": list(IGNORE_DEFAULT_ARGS),
            "timeout": config.launch_timeout_ms,
        }
        if config.proxy and not config.proxy.is_remote:
            options["proxy"] = config.proxy.to_playwright()
        if config.downloads_dir is not None:
            options["downloads_path"] = str(config.downloads_dir)
        return options


async def _stop_playwright(playwright) -> None:
    if playwright is None:
        return
    try:
        await playwright.stop()
    except Exception as e:
        logger.warning(f"Error stopping Playwright driver: {e}")


class BrowserResourceManager:
    """Hands out browsers according to the configured mode.

    In ``per-request`` mode every caller gets a fresh browser that is closed
    when the caller is done. In ``pooled`` mode one browser process is shared;
    its state transitions happen only while holding ``_lock``, the lock is
    acquired with a bounded wait, and the process is closed after
    ``idle_timeout`` seconds without an acquisition once no lease is open.
    """

    def __init__(self, config: RelayConfig, launcher: Optional[BrowserLauncher] = None):
        self.mode = config.browser_mode
        self._config = config
        self._launcher = launcher or BrowserLauncher()
        self._idle_timeout = config.idle_timeout_seconds
        self._lock_timeout = config.lock_timeout_seconds

        self._lock = asyncio.Lock()
        self._handle: Optional[BrowserHandle] = None
        self._state = BrowserState.ABSENT
        self._launches = 0
        self._leases = 0
        self._generation = 0
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._idle_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> BrowserState:
        return self._state

    @property
    def launches(self) -> int:
        return self._launches

    @property
    def active_leases(self) -> int:
        return self._leases

    def launch_config(
        self,
        proxy: Optional[ProxySettings] = None,
        downloads_dir: Optional[Path] = None,
        extra_args: Optional[list[str]] = None,
    ) -> LaunchConfig:
        return LaunchConfig(
            engine=self._config.browser_engine,
            headless=self._config.headless,
            proxy=proxy,
            args=list(CHROMIUM_ARGS) + list(extra_args or []),
            launch_timeout_ms=self._config.launch_timeout_ms,
            downloads_dir=downloads_dir,
        )

    def snapshot(self) -> BrowserSnapshot:
        return BrowserSnapshot(
            mode=self.mode,
            state=self._state,
            launches=self._launches,
            active_leases=self._leases,
        )

    # ── Per-request mode ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def per_request(self, config: LaunchConfig) -> AsyncIterator[BrowserHandle]:
        handle = await self._launcher.launch(config)
        self._launches += 1
        try:
            yield handle
        finally:
            await handle.close()

    # ── Pooled mode ──────────────────────────────────────────────────────────

    async def acquire(self, config: LaunchConfig) -> BrowserHandle:
        """Return the shared browser, launching or relaunching it as needed."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            raise ResourceBusyError(
                "Browser is busy",
                details=f"Could not acquire the browser within {self._lock_timeout:g}s",
            ) from None

        try:
            if self._handle is not None and not self._handle.is_connected():
                logger.warning("Pooled browser failed liveness probe, relaunching")
                await self._close_handle()

            if self._handle is None:
                self._state = BrowserState.LAUNCHING
                try:
                    self._handle = await self._launcher.launch(config)
                except Exception:
                    self._state = BrowserState.ABSENT
                    raise
                self._launches += 1
                self._state = BrowserState.READY
                logger.info(f"Pooled browser ready (launch #{self._launches})")

            self._leases += 1
            self._schedule_idle_close()
            return self._handle
        finally:
            self._lock.release()

    async def release(self, handle: BrowserHandle, context: Optional[BrowserContext] = None):
        """Close a context opened on the pooled browser and drop its lease."""
        await close_quietly(context)
        self._leases = max(0, self._leases - 1)
        if self._leases == 0 and handle is self._handle:
            self._schedule_idle_close()

    def _schedule_idle_close(self):
        self._generation += 1
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        loop = asyncio.get_running_loop()
        self._idle_timer = loop.call_later(
            self._idle_timeout, self._on_idle_deadline, self._generation
        )

    def _on_idle_deadline(self, generation: int):
        self._idle_timer = None
        self._idle_task = asyncio.create_task(self._close_if_idle(generation))

    async def _close_if_idle(self, generation: int):
        async with self._lock:
            if generation != self._generation or self._leases > 0 or self._handle is None:
                return
            logger.info(f"Closing pooled browser after {self._idle_timeout:g}s idle")
            await self._close_handle()

    async def _close_handle(self):
        handle, self._handle = self._handle, None
        if handle is None:
            self._state = BrowserState.ABSENT
            return
        self._state = BrowserState.CLOSING
        try:
            await handle.close()
        finally:
            self._state = BrowserState.ABSENT

    # ── Shared ───────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def isolated_context(
        self,
        config: LaunchConfig,
        context_options: Optional[dict] = None,
        *,
        fresh: bool = False,
    ) -> AsyncIterator[BrowserContext]:
        """Yield a new browser context that is closed on exit.

        ``fresh`` forces a dedicated browser even in pooled mode. Jobs that
        go through a remote CDP browser always get their own connection, so
        the pooled browser is only ever a local, proxy-free process.
        """
        options = dict(context_options or {})
        remote = bool(config.proxy and config.proxy.is_remote)

        if self.mode == "pooled" and not fresh and not remote:
            # Proxies are applied per context so the shared process stays neutral.
            if config.proxy:
                options["proxy"] = config.proxy.to_playwright()
            handle = await self.acquire(config.without_proxy())
            context = None
            try:
                context = await handle.new_context(**options)
                yield context
            finally:
                await self.release(handle, context)
            return

        async with self.per_request(config) as handle:
            context = await handle.new_context(**options)
            try:
                yield context
            finally:
                await close_quietly(context)

    async def shutdown(self):
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        if self._idle_task is not None and not self._idle_task.done():
            await self._idle_task
        async with self._lock:
            if self._handle is not None:
                logger.info("Closing pooled browser")
            await self._close_handle()


def fingerprint_options(user_agent: Optional[str] = None) -> dict:
    """Context options with a rotated user agent and a jittered viewport."""
    return {
        "viewport": {
            "width": BASE_VIEWPORT["width"] + random.randint(0, VIEWPORT_JITTER),
            "height": BASE_VIEWPORT["height"] + random.randint(0, VIEWPORT_JITTER),
        },
        "user_agent": user_agent or random.choice(USER_AGENTS),
        "locale": DEFAULT_LOCALE,
        "timezone_id": DEFAULT_TIMEZONE,
        "extra_http_headers": dict(EXTRA_HTTP_HEADERS),
        "java_script_enabled": True,
        "ignore_https_errors": True,
        "bypass_csp": True,
    }
