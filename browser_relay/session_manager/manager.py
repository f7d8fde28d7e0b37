"""Browser relay HTTP service.

Bridges MCP clients to headless browsers over server-sent events and serves
one-shot scrapes. Owns the profile store, the browser resource manager and
the session registry for the lifetime of the process.

Endpoints:
    GET  /health     - Server, browser and session status
    GET  /sse        - Open an MCP session streamed as server-sent events
    POST /sse        - Deliver a JSON-RPC message to a session (?sessionId=)
    POST /messages   - Same as POST /sse
    POST /scrape     - Scrape one URL and return Markdown
    GET  /cors-test  - Echo request details for CORS checks
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import sys
from typing import Optional

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from ..config import ProxySettings, RelayConfig, load_config
from ..constants import (
    CORS_HEADERS,
    CORS_TEST_PATH,
    HEALTH_FEATURES,
    HEALTH_PATH,
    MESSAGES_PATH,
    SCRAPE_PATH,
    SERVER_NAME,
    SSE_HEADERS,
    SSE_PATH,
)
from ..errors import BadRequestError, RelayError, SessionNotFoundError, ValidationError
from ..models.scrape import ScrapeFailure, ScrapeRequest, utc_timestamp
from ..models.session import HealthStatus
from .browser import BrowserLauncher, BrowserResourceManager
from .normalizer import ContentNormalizer
from .profiles import ProfileStore
from .registry import SessionRegistry
from .scraper import ScrapeController, ScrapeOptions
from .streaming import StreamingSession
from .transport import MarkupNormalizationStage, OutboundPipeline

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class RelayManager:
    """Orchestrates streaming sessions, scrapes and their shared resources."""

    def __init__(self, config: RelayConfig, launcher: Optional[BrowserLauncher] = None):
        self.config = config
        self.launcher = launcher or BrowserLauncher()
        self.profiles = ProfileStore(config.user_data_dir_base)
        self.browsers = BrowserResourceManager(config, self.launcher)
        self.registry = SessionRegistry()
        self.scraper = ScrapeController(config, self.browsers, self.profiles)

    async def setup(self):
        """Remove profiles left behind by a previous run."""
        removed = await self.profiles.release_all()
        if removed:
            logger.info(f"Removed {removed} stale profile directories")
        if self.config.proxy is None:
            logger.warning("No upstream proxy configured; browsing directly")
        else:
            logger.info(f"Upstream proxy: {self.config.proxy.describe()}")

    async def close_sessions(self):
        sessions = self.registry.sessions()
        if sessions:
            logger.info(f"Closing {len(sessions)} active sessions")
            await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)

    async def cleanup(self):
        await self.close_sessions()
        await self.browsers.shutdown()
        await self.profiles.release_all()

    def build_pipeline(self) -> OutboundPipeline:
        pipeline = OutboundPipeline()
        if self.config.normalize_stream_events:
            pipeline.add(MarkupNormalizationStage(ContentNormalizer(self.config.normalizer)))
        return pipeline

    def new_session(self) -> StreamingSession:
        return StreamingSession(
            profiles=self.profiles,
            launcher=self.launcher,
            launch_config=self.browsers.launch_config(proxy=self.config.proxy),
            registry=self.registry,
            pipeline=self.build_pipeline(),
            navigation_timeout_ms=self.config.navigation_timeout_ms,
            keepalive_seconds=self.config.sse_keepalive_seconds,
        )

    def health(self) -> HealthStatus:
        proxy = self.config.proxy
        return HealthStatus(
            timestamp=utc_timestamp(),
            server=SERVER_NAME,
            sessions=len(self.registry),
            browser=self.browsers.snapshot(),
            proxy={
                "configured": proxy is not None,
                "endpoint": proxy.describe() if proxy else None,
                "fallbackDirect": self.config.proxy_fallback_direct,
            },
            normalizer=self.config.normalizer,
            features=list(HEALTH_FEATURES),
        )


# ── Middleware ───────────────────────────────────────────────────────────────


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        response = web.json_response({"error": "Not found"}, status=404)
    if not response.prepared:
        response.headers.update(CORS_HEADERS)
    return response


def _error_response(error: RelayError) -> web.Response:
    return web.json_response(
        {"error": str(error), "details": error.details}, status=error.http_status
    )


# ── HTTP Handlers ────────────────────────────────────────────────────────────


async def handle_health(request: web.Request) -> web.Response:
    mgr: RelayManager = request.app["manager"]
    return web.json_response(mgr.health().model_dump(by_alias=True, mode="json"))


async def handle_sse(request: web.Request) -> web.StreamResponse:
    mgr: RelayManager = request.app["manager"]
    session = mgr.new_session()
    try:
        await session.open()
    except RelayError as e:
        return web.json_response({"error": str(e), "details": e.details}, status=500)
    except Exception as e:
        logger.error("Failed to open SSE session", exc_info=True)
        return web.json_response(
            {"error": "Failed to establish SSE connection", "details": str(e)}, status=500
        )

    response = web.StreamResponse(status=200, headers={**SSE_HEADERS, **CORS_HEADERS})
    try:
        await response.prepare(request)
    except Exception:
        await session.close()
        raise
    logger.info(f"SSE stream started for session {session.id}")
    await session.run(response)
    return response


async def handle_post_message(request: web.Request) -> web.Response:
    mgr: RelayManager = request.app["manager"]
    session_id = request.query.get("sessionId", "").strip()
    if not session_id:
        return _error_response(BadRequestError("Missing sessionId"))

    session = mgr.registry.lookup(session_id)
    if session is None:
        return _error_response(
            SessionNotFoundError("Session not found", details=f"No active session with id {session_id}")
        )

    body = await request.read()
    try:
        await session.post_message(body)
    except BadRequestError as e:
        return _error_response(e)
    except Exception as e:
        logger.error(f"Failed to deliver message to session {session_id}", exc_info=True)
        return web.json_response({"error": "Internal server error", "details": str(e)}, status=500)
    return web.Response(status=202, text="Accepted")


async def handle_scrape(request: web.Request) -> web.Response:
    mgr: RelayManager = request.app["manager"]

    try:
        body = await request.json() if request.can_read_body else {}
        params = ScrapeRequest.model_validate(body)
        proxy = ProxySettings.parse(params.proxy) if params.proxy else None
    except (json.JSONDecodeError, PydanticValidationError, ValueError) as e:
        failure = ScrapeFailure(error="Invalid request", details=str(e))
        return web.json_response(failure.to_json(), status=400)

    options = ScrapeOptions(proxy=proxy, use_proxy=params.use_proxy, normalizer=params.normalizer)
    try:
        result = await mgr.scraper.scrape(params.url, options)
        return web.json_response(result.to_json())

    except ValidationError as e:
        failure = ScrapeFailure(error=str(e), details=e.details)
        return web.json_response(failure.to_json(), status=400)

    except RelayError as e:
        logger.error(f"Scrape of {params.url} failed: {e} ({e.details})")
        failure = ScrapeFailure(error=str(e), details=e.details)
        return web.json_response(failure.to_json(), status=e.http_status)

    except Exception as e:
        logger.error(f"Scrape of {params.url} failed", exc_info=True)
        failure = ScrapeFailure(error="Failed to scrape page", details=str(e))
        return web.json_response(failure.to_json(), status=500)


async def handle_cors_test(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "message": "CORS test successful",
            "method": request.method,
            "origin": request.headers.get("Origin"),
            "headers": dict(request.headers),
            "timestamp": utc_timestamp(),
        }
    )


# ── App Factory ──────────────────────────────────────────────────────────────


async def on_startup(app: web.Application):
    mgr = app.get("manager")
    if mgr is None:
        mgr = RelayManager(app["config"])
        app["manager"] = mgr
    await mgr.setup()
    logger.info(f"Browser relay started on {mgr.config.host}:{mgr.config.port} ({mgr.config.browser_mode})")


async def on_shutdown(app: web.Application):
    mgr: RelayManager = app["manager"]
    await mgr.close_sessions()


async def on_cleanup(app: web.Application):
    mgr: RelayManager = app["manager"]
    await mgr.cleanup()
    logger.info("Browser relay stopped.")


def create_app(config: Optional[RelayConfig] = None, manager: Optional[RelayManager] = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app["config"] = manager.config if manager else (config or load_config())
    if manager is not None:
        app["manager"] = manager

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get(HEALTH_PATH, handle_health)
    app.router.add_get(SSE_PATH, handle_sse)
    app.router.add_post(SSE_PATH, handle_post_message)
    app.router.add_post(MESSAGES_PATH, handle_post_message)
    app.router.add_post(SCRAPE_PATH, handle_scrape)
    app.router.add_get(CORS_TEST_PATH, handle_cors_test)

    return app


def install_process_hooks(profiles: ProfileStore):
    """Last-resort profile cleanup at interpreter exit and on uncaught exceptions."""
    atexit.register(profiles.release_all_sync)
    previous_hook = sys.excepthook

    def excepthook(exc_type, exc, tb):
        logger.critical("Uncaught exception, cleaning up profiles", exc_info=(exc_type, exc, tb))
        profiles.release_all_sync()
        previous_hook(exc_type, exc, tb)

    sys.excepthook = excepthook


def configure_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith("browser_relay"):
            logging.getLogger(name).setLevel(level)


def main():
    """Run the browser relay as a standalone HTTP service."""
    config = load_config()
    configure_logging(config.log_level)
    manager = RelayManager(config)
    install_process_hooks(manager.profiles)
    app = create_app(manager=manager)
    web.run_app(app, host=config.host, port=config.port, handler_cancellation=True, print=None)


if __name__ == "__main__":
    main()
