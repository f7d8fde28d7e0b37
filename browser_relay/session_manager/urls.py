"""Target URL validation."""

from __future__ import annotations

from urllib.parse import urlsplit

from ..errors import ValidationError

ALLOWED_SCHEMES = ("http", "https")


def validate_target_url(url) -> str:
    """Return the stripped URL or raise ``ValidationError``.

    Accepts only non-empty absolute ``http``/``https`` URLs with a host.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("URL is required")
    url = url.strip()
    try:
        parts = urlsplit(url)
        # Accessing the port validates it
        parts.port
    except ValueError as e:
        raise ValidationError("Invalid URL", details=f"{url}: {e}") from e
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError(
            "Invalid URL", details=f"Unsupported scheme '{parts.scheme or ''}'; use http or https"
        )
    if not parts.hostname or any(c.isspace() for c in url):
        raise ValidationError("Invalid URL", details=f"{url} is not a valid absolute URL")
    return url
