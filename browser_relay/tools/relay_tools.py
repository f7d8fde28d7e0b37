"""MCP tools that call the browser relay HTTP service."""

from __future__ import annotations

import json

import httpx

from ..config import RELAY_URL


async def _call_relay(method: str, path: str, json_body: dict | None = None) -> dict:
    """Make a request to the relay HTTP service."""
    url = f"{RELAY_URL}{path}"
    try:
        async with httpx.AsyncClient(timeout=120.0) as client:
            if method == "GET":
                resp = await client.get(url)
            else:
                resp = await client.post(url, json=json_body or {})

            if resp.status_code >= 400:
                data = resp.json()
                error = data.get("error", f"HTTP {resp.status_code}")
                details = data.get("details")
                if details and details != error:
                    error = f"{error} ({details})"
                return {"error": error, "status": resp.status_code}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": "Browser relay is not reachable at "
            f"{RELAY_URL}. It should auto-start with the MCP server. "
            "If running standalone: python -m browser_relay.session_manager"
        }
    except httpx.TimeoutException:
        return {"error": "Browser relay timed out. The page may still be loading."}
    except Exception as e:
        return {"error": f"Failed to connect to browser relay: {e}"}


async def scrape_url(
    url: str,
    use_proxy: bool = True,
    proxy: str = "",
    normalizer: str = "",
    include_metadata: bool = True,
) -> str:
    """Scrape a page through the relay and return it as Markdown.

    Args:
        url: Absolute http(s) URL.
        use_proxy: Route through the configured upstream proxy.
        proxy: Per-request proxy as username:password@host:port.
        normalizer: "basic" or "semantic"; empty uses the server default.
        include_metadata: Prepend title, description and fetch stats.

    Returns:
        Markdown content, or an error message.
    """
    body: dict = {"url": url, "useProxy": use_proxy}
    if proxy:
        body["proxy"] = proxy
    if normalizer:
        body["normalizer"] = normalizer

    result = await _call_relay("POST", "/scrape", body)

    if "error" in result:
        if result.get("status") == 503:
            return f"Error: {result['error']}. The browser is busy, try again shortly."
        return f"Error: {result['error']}"

    content = result.get("content", "")
    if not include_metadata:
        return content

    metadata = result.get("metadata", {})
    stats = result.get("stats", {})
    lines = [f"# {metadata.get('title') or result.get('url', url)}", ""]
    if metadata.get("description"):
        lines.append(f"> {metadata['description']}")
        lines.append("")
    lines.append(
        f"Source: {result.get('url', url)} | HTTP {stats.get('statusCode')} | "
        f"{stats.get('approximateWordCount', 0)} words"
    )
    if stats.get("proxyFallback"):
        lines.append("Note: the proxy failed, this page was fetched directly.")
    lines.extend(["", "---", "", content])
    return "\n".join(lines)


async def relay_status() -> str:
    """Report relay health: active sessions, browser state and proxy setup.

    Returns:
        JSON-formatted status.
    """
    result = await _call_relay("GET", "/health")

    if "error" in result:
        return f"Error: {result['error']}"

    return json.dumps(result, indent=2)
