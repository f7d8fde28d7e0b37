"""One long-lived MCP session streamed to a client over server-sent events."""

from __future__ import annotations

import logging
import sys
import uuid
from pathlib import Path
from typing import Optional

import anyio
from aiohttp import web

from ..models.scrape import utc_timestamp
from ..models.session import SessionState, SessionStatus
from .browser import BrowserLauncher, ContextHandle, LaunchConfig, fingerprint_options
from .profiles import ProfileStore
from .registry import SessionRegistry
from .tools import BrowserToolbox, build_tool_server
from .transport import OutboundPipeline, SseTransport

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

KEEPALIVE_FRAME = b": keepalive\n\n"


class StreamingSession:
    """Owns a profile directory, a persistent browser context and an SSE transport.

    Lifecycle: ``open`` (connecting -> active), ``run`` while the client is
    connected, then ``close`` (closing -> closed). ``close`` runs its teardown
    exactly once no matter how many times or from where it is triggered.
    """

    def __init__(
        self,
        *,
        profiles: ProfileStore,
        launcher: BrowserLauncher,
        launch_config: LaunchConfig,
        registry: SessionRegistry,
        pipeline: Optional[OutboundPipeline] = None,
        navigation_timeout_ms: int = 15_000,
        keepalive_seconds: float = 15.0,
    ):
        self.id = uuid.uuid4().hex
        self.state = SessionState.CONNECTING
        self.created_at = utc_timestamp()
        self.profile_dir: Optional[Path] = None
        self.context_handle: Optional[ContextHandle] = None
        self.transport: Optional[SseTransport] = None

        self._profiles = profiles
        self._launcher = launcher
        self._launch_config = launch_config
        self._registry = registry
        self._pipeline = pipeline
        self._navigation_timeout_ms = navigation_timeout_ms
        self._keepalive_seconds = keepalive_seconds
        self._server = None
        self._closed = False

    def status(self) -> SessionStatus:
        return SessionStatus(
            id=self.id,
            state=self.state,
            created_at=self.created_at,
            profile_dir=str(self.profile_dir) if self.profile_dir else None,
        )

    async def open(self) -> "StreamingSession":
        try:
            self.profile_dir = await self._profiles.allocate()
            self.context_handle = await self._launcher.launch_persistent(
                self.profile_dir, self._launch_config, fingerprint_options()
            )
            self.transport = SseTransport(self.id, self._pipeline)
            toolbox = BrowserToolbox(self.context_handle.context, self._navigation_timeout_ms)
            self._server = build_tool_server(toolbox)
        except Exception:
            logger.error(f"Failed to open session {self.id}", exc_info=True)
            await self.close()
            raise

        self._registry.register(self.id, self)
        self.state = SessionState.ACTIVE
        logger.info(f"Session {self.id} opened (profile {self.profile_dir.name})")
        return self

    async def post_message(self, body: bytes | str) -> None:
        await self.transport.deliver(body)

    async def run(self, response: web.StreamResponse) -> None:
        """Stream outbound events until the client or the protocol goes away."""
        try:
            if not await self._write(response, self.transport.endpoint_event().encode()):
                return
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._serve, tg.cancel_scope)
                tg.start_soon(self._keepalive, response, tg.cancel_scope)
                async for frame in self.transport.events():
                    if not await self._write(response, frame.encode()):
                        break
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self.close()

    async def _serve(self, scope: anyio.CancelScope):
        try:
            await self._server.run(
                self.transport.read_stream,
                self.transport.write_stream,
                self._server.create_initialization_options(),
            )
        except Exception:
            logger.error(f"MCP server for session {self.id} failed", exc_info=True)
        finally:
            scope.cancel()

    async def _keepalive(self, response: web.StreamResponse, scope: anyio.CancelScope):
        while True:
            await anyio.sleep(self._keepalive_seconds)
            if not await self._write(response, KEEPALIVE_FRAME):
                scope.cancel()
                return

    async def _write(self, response: web.StreamResponse, data: bytes) -> bool:
        try:
            await response.write(data)
            return True
        except ConnectionError:
            logger.info(f"Client disconnected from session {self.id}")
            return False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSING

        self._registry.unregister(self.id)
        if self.transport is not None:
            await self.transport.close()
        if self.context_handle is not None:
            await self.context_handle.close()
        await self._profiles.release(self.profile_dir)

        self.state = SessionState.CLOSED
        logger.info(f"Session {self.id} closed")
