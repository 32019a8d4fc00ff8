"""
URL normalization for stable identity keys.

Used to key deletion tombstones (``url:<normalized>``) and to derive
content file names for web articles, so the same article saved from
``https://www.example.com/a/?utm_source=x`` and ``https://example.com/a``
is recognised as one document.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
    "ref",
})


def normalize_url(url: str) -> str:
    """Normalize a URL for comparison.

    Lowercases the host and drops ``www.``, strips trailing slashes,
    tracking parameters and the fragment, and sorts the query.
    Strings that are not absolute URLs are returned lowercased.

    Args:
        url: Raw URL text.

    Returns:
        Normalized URL string.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url.lower()

    if not parts.scheme or not parts.netloc:
        return url.lower()

    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]

    path = parts.path.rstrip("/") or "/"
    query = sorted(
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in TRACKING_PARAMS
    )
    return urlunsplit((parts.scheme.lower(), host, path, urlencode(query), ""))


def hostname_of(url: str) -> str | None:
    """Return the hostname of an absolute URL, or None if it does not parse."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    try:
        return parts.hostname
    except ValueError:
        return None
