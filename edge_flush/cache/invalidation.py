"""
Invalidation requests.

An Invalidation is created per request, handed to the CDN service and
discarded after processing. It is never stored.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4


class InvalidationType(Enum):
    """What the invalidation items are."""
    TAG = "tag"              # entity tag names, e.g. "Post-1@title"
    URL = "url"              # Url rows (or plain URL strings)
    BATCH_ALL = "batch-all"  # full flush of the configured root paths


@dataclass
class Invalidation:
    """A single invalidation request and its outcome."""
    type: Optional[InvalidationType] = None
    items: List[Any] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    must_invalidate_all: bool = False
    success: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)

    # When the purge was sent; rows changed after this are not marked purged
    sent_at: Optional[datetime] = None

    # Raw provider response, for diagnostics
    response: Optional[Dict[str, Any]] = None

    @classmethod
    def for_tags(cls, tags: Iterable[str]) -> "Invalidation":
        return cls().set_tags(tags)

    @classmethod
    def for_urls(cls, urls: Iterable[Any]) -> "Invalidation":
        return cls().set_urls(urls)

    @classmethod
    def successful(cls) -> "Invalidation":
        return cls(type=InvalidationType.BATCH_ALL, must_invalidate_all=True, success=True)

    @classmethod
    def unsuccessful(cls) -> "Invalidation":
        return cls(type=InvalidationType.BATCH_ALL, must_invalidate_all=True, success=False)

    def set_tags(self, tags: Iterable[str]) -> "Invalidation":
        self.type = InvalidationType.TAG
        self.items = [tag for tag in tags if tag]
        return self

    def set_urls(self, urls: Iterable[Any]) -> "Invalidation":
        self.type = InvalidationType.URL
        self.items = [url for url in urls if url]
        return self

    def set_paths(self, paths: Iterable[str]) -> "Invalidation":
        self.paths = [path for path in paths if path]
        return self

    def set_must_invalidate_all(self, value: bool = True) -> "Invalidation":
        self.must_invalidate_all = value
        if value:
            self.type = InvalidationType.BATCH_ALL
        return self

    def set_success(self, value: bool, response: Optional[Dict[str, Any]] = None) -> "Invalidation":
        self.success = value
        self.response = response
        return self

    def is_empty(self) -> bool:
        return not self.items and not self.paths and not self.must_invalidate_all

    def tag_names(self) -> List[str]:
        return [str(item) for item in self.items]

    def url_names(self) -> List[str]:
        """URL strings, whether items are Url rows or plain strings."""
        return [getattr(item, "url", item) for item in self.items]

    def url_ids(self) -> List[int]:
        return [item.id for item in self.items if getattr(item, "id", None) is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value if self.type else None,
            "items": self.url_names() if self.type == InvalidationType.URL else self.tag_names(),
            "paths": self.paths,
            "must_invalidate_all": self.must_invalidate_all,
            "success": self.success,
        }
