"""Server-sent-events transport for MCP plus the outbound message pipeline."""

from __future__ import annotations

import json
import logging
import sys
from typing import AsyncIterator, Callable, Optional

import anyio
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError as PydanticValidationError

from ..constants import SSE_PATH
from ..errors import BadRequestError
from .normalizer import ContentNormalizer, looks_like_markup

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

Stage = Callable[[dict], dict]


def format_sse(event: str, data: str) -> str:
    lines = data.splitlines() or [""]
    payload = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event}\n{payload}\n"


class MarkupNormalizationStage:
    """Rewrites markup in tool result content blocks as Markdown."""

    def __init__(self, normalizer: ContentNormalizer):
        self.normalizer = normalizer

    def __call__(self, payload: dict) -> dict:
        result = payload.get("result")
        if not isinstance(result, dict):
            return payload
        content = result.get("content")
        if not isinstance(content, list):
            return payload

        processed = []
        for item in content:
            if not isinstance(item, dict):
                processed.append(item)
                continue
            if item.get("type") == "text" and looks_like_markup(item.get("text")):
                item = {**item, "text": self.normalizer.normalize(item["text"]).text}
            elif item.get("type") == "html":
                item = {"type": "text", "text": self.normalizer.normalize(item.get("html") or "").text}
            processed.append(item)
        return {**payload, "result": {**result, "content": processed}}


class OutboundPipeline:
    """Ordered stages applied to every outbound JSON-RPC message.

    A stage that raises is skipped and the message continues unchanged.
    """

    def __init__(self, stages: Optional[list[Stage]] = None):
        self.stages: list[Stage] = list(stages or [])

    def add(self, stage: Stage) -> "OutboundPipeline":
        self.stages.append(stage)
        return self

    def process(self, payload: dict) -> dict:
        for stage in self.stages:
            try:
                payload = stage(payload)
            except Exception as e:
                logger.warning(f"Outbound stage {type(stage).__name__} failed: {e}")
        return payload

    def encode(self, message: types.JSONRPCMessage) -> str:
        payload = message.model_dump(by_alias=True, mode="json", exclude_none=True)
        return json.dumps(self.process(payload), ensure_ascii=False)


class SseTransport:
    """Pairs of anyio memory streams between HTTP handlers and an MCP server.

    Inbound messages arrive through ``deliver`` (one POST per message) and are
    read by the server from ``read_stream``. The server writes replies to
    ``write_stream``; ``events`` turns them into SSE frames.
    """

    def __init__(self, session_id: str, pipeline: Optional[OutboundPipeline] = None, buffer_size: int = 32):
        self.session_id = session_id
        self.pipeline = pipeline or OutboundPipeline()
        self._inbound_send, self.read_stream = anyio.create_memory_object_stream(buffer_size)
        self.write_stream, self._outbound_receive = anyio.create_memory_object_stream(buffer_size)
        self._closed = False

    @property
    def endpoint(self) -> str:
        return f"{SSE_PATH}?sessionId={self.session_id}"

    @property
    def closed(self) -> bool:
        return self._closed

    def endpoint_event(self) -> str:
        return format_sse("endpoint", self.endpoint)

    async def deliver(self, body: bytes | str) -> None:
        """Parse one JSON-RPC message and hand it to the MCP server."""
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except PydanticValidationError as e:
            raise BadRequestError("Invalid JSON-RPC message", details=str(e)) from e
        if self._closed:
            raise BadRequestError("Session is closing")
        try:
            await self._inbound_send.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise BadRequestError("Session is closing") from e

    async def events(self) -> AsyncIterator[str]:
        """Yield one SSE ``message`` frame per outbound JSON-RPC message."""
        async with self._outbound_receive:
            async for session_message in self._outbound_receive:
                yield format_sse("message", self.pipeline.encode(session_message.message))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for stream in (self._inbound_send, self.read_stream, self.write_stream, self._outbound_receive):
            await stream.aclose()
