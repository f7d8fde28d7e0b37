"""Browser launch arguments, fingerprint pools, CORS headers and endpoint paths."""

# ── Endpoints ────────────────────────────────────────────────────────────────

SSE_PATH = "/sse"
MESSAGES_PATH = "/messages"
SCRAPE_PATH = "/scrape"
HEALTH_PATH = "/health"
CORS_TEST_PATH = "/cors-test"

SERVER_NAME = "Browser Relay MCP Server"

# ── CORS ─────────────────────────────────────────────────────────────────────

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, Accept, Cache-Control, Connection, Upgrade, "
        "Sec-WebSocket-Key, Sec-WebSocket-Version, Sec-WebSocket-Protocol"
    ),
    "Access-Control-Allow-Credentials": "true",
    "Access-Control-Expose-Headers": "Content-Type, Cache-Control, Connection",
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# ── Browser launch ───────────────────────────────────────────────────────────

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--hide-scrollbars",
    "--disable-notifications",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-breakpad",
    "--disable-component-extensions-with-background-pages",
    "--disable-extensions",
    "--disable-ipc-flooding-protection",
    "--force-color-profile=srgb",
    "--metrics-recording-only",
    "--no-default-browser-check",
    "--no-first-run",
    "--password-store=basic",
    "--use-mock-keychain",
]

IGNORE_DEFAULT_ARGS = ["--enable-automation"]

# ── Fingerprint ──────────────────────────────────────────────────────────────

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

BASE_VIEWPORT = {"width": 1920, "height": 1080}
VIEWPORT_JITTER = 100
DEFAULT_LOCALE = "en-US"
DEFAULT_TIMEZONE = "America/New_York"

EXTRA_HTTP_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Cache-Control": "max-age=0",
}

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
window.chrome = window.chrome || { runtime: {} };
const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
if (originalQuery) {
  window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
      ? Promise.resolve({ state: Notification.permission })
      : originalQuery(parameters)
  );
}
"""

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font", "stylesheet"})

# ── Scraping ─────────────────────────────────────────────────────────────────

# Bright Data SERP zones return 502 for plain page loads; the unlocker zone does not.
PROXY_ZONE_REWRITES = {"serp_api3": "web_unlocker1"}

METADATA_SCRIPT = """
() => {
  const meta = (name) => {
    const el = document.querySelector(`meta[name="${name}"], meta[property="${name}"]`);
    return el ? el.getAttribute('content') : null;
  };
  const canonical = document.querySelector('link[rel="canonical"]');
  return {
    title: document.title || '',
    description: meta('description') || meta('og:description'),
    keywords: meta('keywords'),
    author: meta('author') || meta('og:site_name'),
    canonicalUrl: canonical ? canonical.href : null,
    url: window.location.href,
    lastModified: document.lastModified || null,
  };
}
"""

HEALTH_FEATURES = [
    "MCP over SSE with per-session browser profiles",
    "One-shot /scrape endpoint",
    "Pooled or per-request browser lifecycle",
    "Upstream proxy with direct fallback",
    "Rotating user agents and randomized viewport",
    "Semantic HTML to Markdown conversion",
    "Metadata extraction",
]
