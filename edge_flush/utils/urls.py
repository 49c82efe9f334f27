"""
URL Utilities

Normalization used to content-address stored URLs.
"""

import hashlib
from typing import Optional
from urllib.parse import urlsplit, urlunsplit


MAX_URL_LENGTH = 255


def sanitize_url(url: str) -> str:
    """
    Normalize a URL before hashing.

    - Lowercase scheme and host
    - Drop the fragment (never sent to the CDN)
    - Strip trailing slashes from non-root paths
    """
    url = (url or "").strip()

    parts = urlsplit(url)

    path = parts.path
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        parts.query,
        "",
    ))


def url_hash(url: str) -> str:
    """sha1 of the normalized URL."""
    return hashlib.sha1(sanitize_url(url).encode("utf-8")).hexdigest()


def limit(value: str, length: int = MAX_URL_LENGTH) -> str:
    """Cap a string to the column length."""
    return value if len(value) <= length else value[:length]


def parse_host(url: Optional[str]) -> Optional[str]:
    """Extract the hostname (lowercase, no port) from a URL."""
    if not url:
        return None

    return urlsplit(url.strip()).hostname


def is_truncated(url: str, hashed: str) -> bool:
    """A stored URL cut to the column length no longer hashes to its url_hash."""
    return len(url) >= MAX_URL_LENGTH and url_hash(url) != hashed
