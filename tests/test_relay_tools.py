from __future__ import annotations

import json
import unittest
from unittest.mock import AsyncMock, patch

from browser_relay.tools import relay_tools

SCRAPE_RESPONSE = {
    "success": True,
    "url": "https://example.com",
    "content": "# Example Domain\n\nBody text",
    "metadata": {"title": "Example Domain", "description": "An example page"},
    "stats": {"statusCode": 200, "approximateWordCount": 5, "proxyFallback": True},
}


class TestRelayTools(unittest.IsolatedAsyncioTestCase):
    async def test_scrape_url_formats_metadata(self) -> None:
        call = AsyncMock(return_value=SCRAPE_RESPONSE)
        with patch.object(relay_tools, "_call_relay", call):
            text = await relay_tools.scrape_url("https://example.com", use_proxy=False, normalizer="basic")

        call.assert_awaited_once_with(
            "POST", "/scrape", {"url": "https://example.com", "useProxy": False, "normalizer": "basic"}
        )
        self.assertTrue(text.startswith("# Example Domain\n\n> An example page"))
        self.assertIn("HTTP 200", text)
        self.assertIn("fetched directly", text)
        self.assertTrue(text.endswith("Body text"))

    async def test_scrape_url_content_only(self) -> None:
        with patch.object(relay_tools, "_call_relay", AsyncMock(return_value=SCRAPE_RESPONSE)):
            text = await relay_tools.scrape_url("https://example.com", include_metadata=False)
        self.assertEqual(text, SCRAPE_RESPONSE["content"])

    async def test_scrape_url_reports_errors(self) -> None:
        busy = {"error": "Browser is busy", "status": 503}
        with patch.object(relay_tools, "_call_relay", AsyncMock(return_value=busy)):
            text = await relay_tools.scrape_url("https://example.com")
        self.assertTrue(text.startswith("Error: Browser is busy"))
        self.assertIn("try again", text)

    async def test_relay_status_is_json(self) -> None:
        health = {"status": "healthy", "sessions": 2}
        with patch.object(relay_tools, "_call_relay", AsyncMock(return_value=health)):
            text = await relay_tools.relay_status()
        self.assertEqual(json.loads(text), health)

    async def test_unreachable_relay(self) -> None:
        with patch.object(relay_tools, "RELAY_URL", "http://127.0.0.1:9"):
            result = await relay_tools._call_relay("GET", "/health")
        self.assertIn("error", result)


if __name__ == "__main__":
    unittest.main()
