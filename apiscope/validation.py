"""URL checks shared by discovery, project creation and the watch list."""

from __future__ import annotations

from urllib.parse import urlsplit

import httpx

from apiscope.errors import ValidationError

_HTTP_SCHEMES = ("http", "https")
_STORE_SCHEMES = ("mongodb", "mongodb+srv")


def validate_http_url(url: str) -> str:
    """Return *url* unchanged if it is an absolute http(s) URL.

    Raises:
        ValidationError: when the URL cannot be parsed or lacks a host.
    """
    if not url or not isinstance(url, str):
        raise ValidationError("URL is required")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise ValidationError(f"Invalid URL format: {exc}") from exc
    if parsed.scheme not in _HTTP_SCHEMES or not parsed.host:
        raise ValidationError(f"Invalid URL format: {url!r}")
    return url


def validate_store_url(url: str) -> str:
    """Return *url* unchanged if it looks like a MongoDB connection string."""
    if not url or not isinstance(url, str):
        raise ValidationError("Store URL is required")
    parts = urlsplit(url)
    if parts.scheme not in _STORE_SCHEMES or not parts.netloc:
        raise ValidationError("Invalid store URL format: expected mongodb:// or mongodb+srv://")
    return url
