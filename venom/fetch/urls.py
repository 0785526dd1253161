"""URL canonicalisation used as the identity key for deduplication."""
from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_content",
        "utm_term",
        "ref",
        "fbclid",
        "gclid",
    }
)


def normalize_url(url: str) -> str:
    """Return the canonical form of ``url``.

    The fragment and known tracking parameters are dropped and a trailing
    slash is removed unless the path is the root. Input that does not parse
    into a scheme and host is returned unchanged.
    """
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            return url
        query = urlencode(
            [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key not in TRACKING_PARAMS]
        )
        path = parts.path or "/"
        normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))
    except ValueError:
        return url
    if normalized.endswith("/") and path != "/":
        normalized = normalized[:-1]
    return normalized


def domain_of(url: str) -> str:
    """Extract the hostname, or an empty string when the URL is unparsable."""
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def is_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)
