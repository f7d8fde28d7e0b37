from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from browser_relay.config import ProxySettings, RelayConfig
from browser_relay.errors import BrowserLaunchError, ResourceBusyError
from browser_relay.models.session import BrowserState
from browser_relay.session_manager import browser as browser_module
from browser_relay.session_manager.browser import (
    BrowserLauncher,
    BrowserResourceManager,
    LaunchConfig,
    fingerprint_options,
)

from fakes import FakeLauncher


def _config(tmp: str, **overrides) -> RelayConfig:
    values = {
        "user_data_dir_base": Path(tmp),
        "browser_mode": "pooled",
        "idle_timeout_seconds": 60.0,
        "lock_timeout_seconds": 1.0,
    }
    values.update(overrides)
    return RelayConfig(**values)


class TestPooledBrowser(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.launcher = FakeLauncher(launch_delay=0.05)
        self.manager = BrowserResourceManager(_config(self._tmp.name), self.launcher)

    async def asyncTearDown(self) -> None:
        await self.manager.shutdown()
        self._tmp.cleanup()

    async def test_concurrent_acquisitions_launch_once(self) -> None:
        config = self.manager.launch_config()
        handles = await asyncio.gather(*(self.manager.acquire(config) for _ in range(10)))

        self.assertEqual(self.launcher.launches, 1)
        self.assertTrue(all(h is handles[0] for h in handles))
        self.assertEqual(self.manager.active_leases, 10)
        self.assertEqual(self.manager.state, BrowserState.READY)

    async def test_lock_wait_is_bounded(self) -> None:
        manager = BrowserResourceManager(
            _config(self._tmp.name, lock_timeout_seconds=0.1), self.launcher
        )
        await manager._lock.acquire()
        try:
            with self.assertRaises(ResourceBusyError) as ctx:
                await manager.acquire(manager.launch_config())
        finally:
            manager._lock.release()
        self.assertEqual(ctx.exception.http_status, 503)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.launcher.launches, 0)

    async def test_dead_browser_is_relaunched(self) -> None:
        config = self.manager.launch_config()
        first = await self.manager.acquire(config)
        await self.manager.release(first)
        first.browser.connected = False

        second = await self.manager.acquire(config)

        self.assertIsNot(first, second)
        self.assertEqual(self.launcher.launches, 2)
        self.assertTrue(first.browser.closed)
        self.assertEqual(self.manager.state, BrowserState.READY)

    async def test_failed_launch_leaves_pool_absent(self) -> None:
        self.launcher.fail_with = BrowserLaunchError("no chromium")
        with self.assertRaises(BrowserLaunchError):
            await self.manager.acquire(self.manager.launch_config())
        self.assertEqual(self.manager.state, BrowserState.ABSENT)
        self.assertEqual(self.manager.active_leases, 0)

    async def test_idle_browser_is_closed(self) -> None:
        manager = BrowserResourceManager(
            _config(self._tmp.name, idle_timeout_seconds=0.05), self.launcher
        )
        handle = await manager.acquire(manager.launch_config())
        await manager.release(handle)

        await asyncio.sleep(0.3)

        self.assertTrue(handle.browser.closed)
        self.assertEqual(manager.state, BrowserState.ABSENT)
        await manager.shutdown()

    async def test_idle_close_waits_for_open_leases(self) -> None:
        manager = BrowserResourceManager(
            _config(self._tmp.name, idle_timeout_seconds=0.05), self.launcher
        )
        handle = await manager.acquire(manager.launch_config())

        await asyncio.sleep(0.2)
        self.assertFalse(handle.browser.closed)
        self.assertEqual(manager.state, BrowserState.READY)

        await manager.release(handle)
        await asyncio.sleep(0.2)
        self.assertTrue(handle.browser.closed)
        await manager.shutdown()

    async def test_isolated_context_uses_shared_browser_and_closes_context(self) -> None:
        proxy = ProxySettings(server="http://proxy.local:8080", username="u", password="p")
        config = self.manager.launch_config(proxy=proxy)

        async with self.manager.isolated_context(config, {"locale": "en-US"}) as context:
            self.assertEqual(self.manager.active_leases, 1)
            self.assertEqual(context.options["proxy"]["server"], "http://proxy.local:8080")
        async with self.manager.isolated_context(config) as second:
            pass

        self.assertEqual(self.launcher.launches, 1)
        self.assertIsNone(self.launcher.launch_configs[0].proxy)
        self.assertTrue(context.closed)
        self.assertTrue(second.closed)
        self.assertEqual(self.manager.active_leases, 0)
        self.assertFalse(self.launcher.browsers[0].closed)

    async def test_fresh_context_bypasses_pool(self) -> None:
        config = self.manager.launch_config()
        async with self.manager.isolated_context(config, fresh=True):
            pass
        self.assertEqual(self.manager.state, BrowserState.ABSENT)
        self.assertTrue(self.launcher.browsers[0].closed)

    async def test_snapshot_reports_mode_and_leases(self) -> None:
        await self.manager.acquire(self.manager.launch_config())
        snapshot = self.manager.snapshot().model_dump(by_alias=True, mode="json")
        self.assertEqual(snapshot["mode"], "pooled")
        self.assertEqual(snapshot["state"], "ready")
        self.assertEqual(snapshot["launches"], 1)
        self.assertEqual(snapshot["activeLeases"], 1)

    async def test_shutdown_closes_pooled_browser(self) -> None:
        handle = await self.manager.acquire(self.manager.launch_config())
        await self.manager.shutdown()
        self.assertTrue(handle.browser.closed)
        self.assertEqual(self.manager.state, BrowserState.ABSENT)


class TestPerRequestBrowser(unittest.IsolatedAsyncioTestCase):
    async def test_each_context_gets_its_own_browser(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            launcher = FakeLauncher()
            manager = BrowserResourceManager(_config(tmp, browser_mode="per-request"), launcher)
            config = manager.launch_config()

            async with manager.isolated_context(config) as first:
                pass
            async with manager.isolated_context(config) as second:
                pass

            self.assertEqual(launcher.launches, 2)
            self.assertTrue(all(b.closed for b in launcher.browsers))
            self.assertTrue(first.closed and second.closed)

    async def test_context_close_failure_does_not_mask_body_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            launcher = FakeLauncher()
            manager = BrowserResourceManager(_config(tmp, browser_mode="per-request"), launcher)

            with self.assertRaises(KeyError):
                async with manager.isolated_context(manager.launch_config()) as context:
                    context.browser.fail_on_context_close = True
                    raise KeyError("boom")

            self.assertTrue(launcher.browsers[0].closed)


class TestBrowserLauncher(unittest.IsolatedAsyncioTestCase):
    async def test_driver_start_failure_is_a_launch_error(self) -> None:
        driver = MagicMock()
        driver.return_value.start = AsyncMock(side_effect=RuntimeError("driver missing"))
        launcher = BrowserLauncher()
        with tempfile.TemporaryDirectory() as tmp, patch.object(browser_module, "async_playwright", driver):
            with self.assertRaises(BrowserLaunchError) as ctx:
                await launcher.launch(LaunchConfig())
            self.assertEqual(ctx.exception.details, "driver missing")

            with self.assertRaises(BrowserLaunchError):
                await launcher.launch_persistent(Path(tmp), LaunchConfig())

    async def test_camoufox_persistent_context_keeps_context_options(self) -> None:
        camoufox = MagicMock()
        context = object()
        camoufox.return_value.__aenter__ = AsyncMock(return_value=context)
        camoufox.return_value.__aexit__ = AsyncMock(return_value=None)
        options = fingerprint_options()

        with tempfile.TemporaryDirectory() as tmp, patch.object(browser_module, "AsyncCamoufox", camoufox):
            handle = await BrowserLauncher().launch_persistent(
                Path(tmp), LaunchConfig(engine="camoufox"), options
            )
            await handle.close()

        kwargs = camoufox.call_args.kwargs
        self.assertIs(handle.context, context)
        self.assertEqual(kwargs["user_data_dir"], tmp)
        self.assertEqual(kwargs["locale"], "en-US")
        self.assertEqual(kwargs["extra_http_headers"], options["extra_http_headers"])
        self.assertTrue(kwargs["ignore_https_errors"])
        self.assertNotIn("user_agent", kwargs)
        self.assertNotIn("viewport", kwargs)
        camoufox.return_value.__aexit__.assert_awaited_once()


class TestFingerprint(unittest.TestCase):
    def test_viewport_is_jittered_around_base(self) -> None:
        options = fingerprint_options()
        self.assertGreaterEqual(options["viewport"]["width"], 1920)
        self.assertLessEqual(options["viewport"]["width"], 2020)
        self.assertTrue(options["user_agent"].startswith("Mozilla/5.0"))
        self.assertEqual(options["locale"], "en-US")


if __name__ == "__main__":
    unittest.main()
