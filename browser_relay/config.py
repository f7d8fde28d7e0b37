"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

BrowserMode = Literal["pooled", "per-request"]
BrowserEngine = Literal["chromium", "camoufox"]
NormalizerMode = Literal["basic", "semantic"]

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def _get_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or "").strip() or default


def _get_bool(key: str, default: bool) -> bool:
    raw = _get_str(key).lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def _get_int(key: str, default: int, minimum: int, maximum: int) -> int:
    raw = _get_str(key)
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, min(value, maximum))


def _get_float(key: str, default: float, minimum: float, maximum: float) -> float:
    raw = _get_str(key)
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, min(value, maximum))


def _get_choice(key: str, default: str, choices: tuple[str, ...]) -> str:
    raw = _get_str(key).lower()
    return raw if raw in choices else default


class ProxySettings(BaseModel):
    """Upstream proxy for outbound browsing.

    ``ws_endpoint`` points at a remote scraping browser reachable over CDP;
    when set the relay connects to it instead of launching Chromium locally.
    """

    server: str = ""
    username: Optional[str] = None
    password: Optional[str] = None
    ws_endpoint: str = ""

    @property
    def is_remote(self) -> bool:
        return bool(self.ws_endpoint)

    def to_playwright(self) -> dict:
        proxy = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
        if self.password:
            proxy["password"] = self.password
        return proxy

    def describe(self) -> str:
        """Endpoint for logs and ``/health``, without credentials or query."""
        parts = urlsplit(self.ws_endpoint if self.is_remote else self.server)
        host = parts.hostname or ""
        if ":" in host:
            host = f"[{host}]"
        try:
            port = parts.port
        except ValueError:
            port = None
        if port is not None:
            host = f"{host}:{port}"
        return urlunsplit((parts.scheme, host, parts.path, "", ""))

    @classmethod
    def parse(cls, raw: str) -> "ProxySettings":
        """Parse a ``username:password@host:port`` proxy string."""
        credentials, sep, address = raw.strip().rpartition("@")
        host, _, port = address.rpartition(":")
        username, _, password = credentials.partition(":")
        if not sep or not host or not port.isdigit() or not username or not password:
            raise ValueError("Invalid proxy format. Expected: username:password@host:port")
        return cls(server=f"http://{host}:{port}", username=username, password=password)


class RelayConfig(BaseModel):
    """Runtime configuration for the relay server.

    Every variant of the relay (pooled vs per-request browsers, proxied vs
    direct, basic vs semantic Markdown) is a value of this model.
    """

    host: str = "0.0.0.0"
    port: int = 8931
    user_data_dir_base: Path = Path("./user-data-dirs")

    browser_mode: BrowserMode = "per-request"
    browser_engine: BrowserEngine = "chromium"
    headless: bool = True
    idle_timeout_seconds: float = 300.0
    lock_timeout_seconds: float = 30.0
    launch_timeout_ms: int = 60_000

    navigation_timeout_ms: int = 15_000
    retry_budget: int = 2
    retry_backoff_seconds: float = 1.0
    settle_ms: int = 1000

    normalizer: NormalizerMode = "semantic"
    normalize_stream_events: bool = True
    sse_keepalive_seconds: float = 15.0

    proxy: Optional[ProxySettings] = None
    proxy_fallback_direct: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RelayConfig":
        proxy = None
        proxy_server = _get_str("PROXY_SERVER")
        ws_endpoint = _get_str("PROXY_WS_ENDPOINT")
        if proxy_server or ws_endpoint:
            proxy = ProxySettings(
                server=proxy_server,
                username=_get_str("PROXY_USERNAME") or None,
                password=_get_str("PROXY_PASSWORD") or None,
                ws_endpoint=ws_endpoint,
            )

        return cls(
            host=_get_str("HOST", "0.0.0.0"),
            port=_get_int("PORT", 8931, 1, 65535),
            user_data_dir_base=Path(_get_str("USER_DATA_DIR_BASE", "./user-data-dirs")),
            browser_mode=_get_choice("BROWSER_MODE", "per-request", ("pooled", "per-request")),
            browser_engine=_get_choice("BROWSER_ENGINE", "chromium", ("chromium", "camoufox")),
            headless=_get_bool("BROWSER_HEADLESS", True),
            idle_timeout_seconds=_get_float("BROWSER_IDLE_TIMEOUT_SECONDS", 300.0, 1.0, 86_400.0),
            lock_timeout_seconds=_get_float("BROWSER_LOCK_TIMEOUT_SECONDS", 30.0, 0.1, 600.0),
            launch_timeout_ms=_get_int("BROWSER_LAUNCH_TIMEOUT_MS", 60_000, 1000, 600_000),
            navigation_timeout_ms=_get_int("NAVIGATION_TIMEOUT_MS", 15_000, 1000, 300_000),
            retry_budget=_get_int("SCRAPE_RETRY_BUDGET", 2, 1, 5),
            retry_backoff_seconds=_get_float("SCRAPE_RETRY_BACKOFF_SECONDS", 1.0, 0.0, 30.0),
            settle_ms=_get_int("SCRAPE_SETTLE_MS", 1000, 0, 30_000),
            normalizer=_get_choice("CONTENT_NORMALIZER", "semantic", ("basic", "semantic")),
            normalize_stream_events=_get_bool("NORMALIZE_STREAM_EVENTS", True),
            sse_keepalive_seconds=_get_float("SSE_KEEPALIVE_SECONDS", 15.0, 1.0, 300.0),
            proxy=proxy,
            proxy_fallback_direct=_get_bool("PROXY_FALLBACK_DIRECT", True),
            log_level=_get_str("LOG_LEVEL", "INFO").upper(),
        )


def load_config() -> RelayConfig:
    return RelayConfig.from_env()


# Relay endpoint used by the stdio MCP shim
RELAY_HOST = _get_str("RELAY_HOST", "127.0.0.1")
RELAY_PORT = _get_int("PORT", 8931, 1, 65535)
RELAY_URL = _get_str("RELAY_URL", f"http://{RELAY_HOST}:{RELAY_PORT}")
