"""One-shot scraping: validate, open an isolated context, navigate with retry, extract."""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from playwright.async_api import BrowserContext, Error as PlaywrightError, Page, Response, Route

from ..config import ProxySettings, RelayConfig
from ..constants import BLOCKED_RESOURCE_TYPES, METADATA_SCRIPT, PROXY_ZONE_REWRITES, STEALTH_INIT_SCRIPT
from ..errors import BrowserLaunchError, NavigationError
from ..models.scrape import PageMetadata, ScrapeResult, ScrapeStats, ScrapeTiming, utc_timestamp
from .browser import BrowserResourceManager, fingerprint_options
from .normalizer import ContentNormalizer
from .profiles import ProfileStore
from .urls import validate_target_url

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@dataclass
class ScrapeOptions:
    proxy: Optional[ProxySettings] = None
    use_proxy: bool = True
    normalizer: Optional[str] = None


@dataclass
class PageCapture:
    html: str
    status: int
    headers: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    attempts: int = 1


def rewrite_proxy_zone(proxy: Optional[ProxySettings]) -> Optional[ProxySettings]:
    """Swap proxy zones that reject plain page loads for ones that accept them."""
    if proxy is None or not proxy.username:
        return proxy
    username = proxy.username
    for old, new in PROXY_ZONE_REWRITES.items():
        if old in username:
            logger.info(f"Switching proxy zone {old} to {new}")
            username = username.replace(old, new)
    if username == proxy.username:
        return proxy
    return proxy.model_copy(update={"username": username})


async def block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class ScrapeController:
    """Runs scrape jobs against the browser resource manager.

    Every job owns one profile directory that is deleted before the result
    is returned, whether the job succeeded or not.
    """

    def __init__(self, config: RelayConfig, browsers: BrowserResourceManager, profiles: ProfileStore):
        self.config = config
        self.browsers = browsers
        self.profiles = profiles
        self._normalizers = {
            "basic": ContentNormalizer("basic"),
            "semantic": ContentNormalizer("semantic"),
        }

    def resolve_proxy(self, options: ScrapeOptions) -> Optional[ProxySettings]:
        if not options.use_proxy:
            return None
        return rewrite_proxy_zone(options.proxy or self.config.proxy)

    async def scrape(self, target_url, options: Optional[ScrapeOptions] = None) -> ScrapeResult:
        url = validate_target_url(target_url)
        options = options or ScrapeOptions()
        normalizer = self._normalizers.get(options.normalizer or self.config.normalizer)
        if normalizer is None:
            normalizer = self._normalizers[self.config.normalizer]
        proxy = self.resolve_proxy(options)

        timing = ScrapeTiming(started_at=utc_timestamp())
        started = time.monotonic()
        logger.info(f"Scraping {url} ({'proxy ' + proxy.describe() if proxy else 'direct'})")

        fallback = False
        profile = await self.profiles.allocate()
        try:
            try:
                capture = await self._capture(url, profile, proxy)
            except (NavigationError, BrowserLaunchError) as e:
                if not self._should_fall_back(e, proxy):
                    raise
                logger.warning(f"Proxy path failed for {url} ({e}); retrying with a direct connection")
                fallback = True
                capture = await self._capture(url, profile, None, fresh=True)
        finally:
            await self.profiles.release(profile)

        normalized = normalizer.normalize(capture.html)
        metadata = PageMetadata.model_validate(capture.metadata or {})
        if not metadata.title:
            metadata.title = normalized.title
        if not metadata.url:
            metadata.url = url

        timing.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Scraped {url}: status {capture.status}, {len(normalized.text)} chars "
            f"in {timing.duration_ms}ms"
        )
        return ScrapeResult(
            url=url,
            content=normalized.text,
            metadata=metadata,
            stats=ScrapeStats(
                content_length=len(normalized.text),
                approximate_word_count=normalized.word_count,
                status_code=capture.status,
                headers=capture.headers,
                attempts=capture.attempts,
                proxy_used=proxy is not None and not fallback,
                proxy_fallback=fallback,
            ),
            timing=timing,
        )

    def _should_fall_back(self, error: Exception, proxy: Optional[ProxySettings]) -> bool:
        if proxy is None or not self.config.proxy_fallback_direct:
            return False
        if isinstance(error, BrowserLaunchError):
            return True
        return isinstance(error, NavigationError) and error.is_bad_gateway

    async def _capture(
        self,
        url: str,
        profile: Path,
        proxy: Optional[ProxySettings],
        *,
        fresh: bool = False,
    ) -> PageCapture:
        dedicated = fresh or self.browsers.mode != "pooled"
        launch_config = self.browsers.launch_config(
            proxy=proxy,
            downloads_dir=profile if dedicated else None,
            extra_args=[f"--disk-cache-dir={profile}"] if dedicated else None,
        )
        async with self.browsers.isolated_context(
            launch_config, fingerprint_options(), fresh=fresh
        ) as context:
            page = await self._prepare_page(context)
            response, attempts = await self._navigate(page, url, proxied=proxy is not None)
            if self.config.settle_ms:
                await page.wait_for_timeout(self.config.settle_ms)
            metadata, html = await asyncio.gather(page.evaluate(METADATA_SCRIPT), page.content())
            return PageCapture(
                html=html,
                status=response.status,
                headers=dict(response.headers),
                metadata=metadata,
                attempts=attempts,
            )

    async def _prepare_page(self, context: BrowserContext) -> Page:
        await context.add_init_script(STEALTH_INIT_SCRIPT)
        await context.route("**/*", block_heavy_resources)
        page = await context.new_page()
        page.set_default_timeout(self.config.navigation_timeout_ms)
        return page

    async def _navigate(self, page: Page, url: str, *, proxied: bool) -> tuple[Response, int]:
        """Load ``url`` within the retry budget; non-2xx responses count as failures."""
        budget = self.config.retry_budget
        last_error: Optional[NavigationError] = None

        for attempt in range(1, budget + 1):
            try:
                response = await page.goto(
                    url, wait_until="domcontentloaded", timeout=self.config.navigation_timeout_ms
                )
            except PlaywrightError as e:
                last_error = NavigationError(
                    f"Navigation to {url} failed", attempts=attempt, details=str(e)
                )
            else:
                if response is None:
                    last_error = NavigationError("No response received", attempts=attempt)
                elif 200 <= response.status < 300:
                    return response, attempt
                else:
                    last_error = NavigationError(
                        f"HTTP {response.status}", status=response.status, attempts=attempt
                    )
                    if last_error.is_bad_gateway and proxied and self.config.proxy_fallback_direct:
                        raise last_error

            if attempt < budget:
                delay = self.config.retry_backoff_seconds * attempt
                logger.warning(
                    f"Attempt {attempt}/{budget} for {url} failed: {last_error}; retrying in {delay:g}s"
                )
                await asyncio.sleep(delay)

        logger.warning(f"All {budget} attempts for {url} failed: {last_error}")
        raise last_error
