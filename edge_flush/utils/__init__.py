"""Shared helpers."""

from edge_flush.utils.patterns import match, matches_any
from edge_flush.utils.urls import sanitize_url, url_hash, parse_host

__all__ = [
    "match",
    "matches_any",
    "sanitize_url",
    "url_hash",
    "parse_host",
]
