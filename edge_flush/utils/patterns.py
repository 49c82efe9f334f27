"""
Glob Pattern Matching

Shared predicate for the allow/deny lists: route names, excluded tags and
excluded model classes.

Only `*` is special (any run of characters, including none). Everything
else is matched literally and case-sensitively against the whole name:
    "Post"      matches only "Post"
    "admin.*"   matches "admin.users", "admin."
    "*@secret*" matches "User-1@secret_token"
"""

import re
from functools import lru_cache
from typing import Iterable, Optional, Pattern


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Pattern:
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile(".*".join(parts), re.DOTALL)


def match(pattern: str, candidate: str) -> bool:
    """Check if candidate matches the glob pattern."""
    if pattern == candidate:
        return True

    return _compile(pattern).fullmatch(candidate) is not None


def matches_any(patterns: Optional[Iterable[str]], candidate: str) -> bool:
    """Check if any of the patterns matches candidate. Blank patterns are ignored."""
    if not patterns:
        return False

    return any(
        match(str(pattern), candidate)
        for pattern in patterns
        if pattern and str(pattern).strip()
    )
