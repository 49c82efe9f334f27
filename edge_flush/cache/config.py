"""
Edge Flush Configuration

Centralized, immutable configuration for the cache-control and
invalidation engines. Loaded once from the environment (and `.env`).

Settings can be overridden via environment variables, using the
EDGE_FLUSH_ prefix and `__` for nested sections:
- EDGE_FLUSH_ENABLED=false
- EDGE_FLUSH_INVALIDATIONS__TYPE=immediate
- EDGE_FLUSH_CDN__SERVICE=edge_flush.cache.cdn.CloudflareCDN
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


WEEK = 60 * 60 * 24 * 7

ANY_TAG = "*"

WARMED_URL_HEADER = "X-Edge-Flush-Warmed-Url"


class MaxAgeConfig(BaseModel):
    """Default max-age and how competing values are merged."""
    default: int = WEEK
    strategy: str = "min"  # min, last

    class Config:
        frozen = True


class AllowDenyConfig(BaseModel):
    """Allow-list (empty = everything) and deny-list."""
    cachable: List[Any] = Field(default_factory=list)
    not_cachable: List[Any] = Field(default_factory=list)

    class Config:
        frozen = True


class RoutesConfig(AllowDenyConfig):
    cache_nameless_routes: bool = False


class ValidFormsConfig(BaseModel):
    """Markers of session-bound forms that must never be cached."""
    enabled: bool = False
    strings: List[str] = Field(default_factory=lambda: [
        '<input type="hidden" name="csrf_token" value="%CSRF_TOKEN%">',
    ])

    class Config:
        frozen = True


class DomainsConfig(BaseModel):
    allowed: List[str] = Field(default_factory=list)
    blocked: List[str] = Field(default_factory=list)

    class Config:
        frozen = True


class TagsConfig(BaseModel):
    format: str = "app-%environment%-%sha1%"
    excluded_model_classes: List[str] = Field(default_factory=list)

    class Config:
        frozen = True


class StoreTagsConfig(BaseModel):
    enabled: bool = True

    class Config:
        frozen = True


class BatchConfig(BaseModel):
    """Full-flush root paths and an optional cap on itemized purges."""
    roots: List[str] = Field(default_factory=lambda: ["/*"])
    size: Optional[int] = None

    class Config:
        frozen = True


class InvalidationsConfig(BaseModel):
    enabled: bool = True
    type: str = "batch"  # batch, immediate
    properties_ignored: List[str] = Field(default_factory=lambda: [
        "updated_at",
        "created_at",
    ])
    batch: BatchConfig = Field(default_factory=BatchConfig)

    class Config:
        frozen = True


class CDNConfig(BaseModel):
    """CDN provider selection and credentials."""
    service: str = "edge_flush.cache.cdn.NullCDN"
    max_urls: int = 30  # Cloudflare purge-by-URL ceiling per call
    cloudflare_zone_id: Optional[str] = None
    cloudflare_api_token: Optional[str] = None
    timeout: float = 10.0

    class Config:
        frozen = True


def default_strategies() -> Dict[str, List[str]]:
    return {
        "cache": ["max-age", "public"],
        "do-not-cache": ["max-age=0", "no-cache", "no-store", "private"],
    }


class EdgeFlushSettings(BaseSettings):
    """
    Immutable configuration snapshot.

    Injected into CacheControl, TagIndexer and InvalidationOrchestrator at
    construction; nothing in the engines reads the environment directly.
    """

    # Global toggle
    enabled: bool = True

    # Used in the aggregate edge tag (%environment%)
    environment: str = "production"

    # bool, zero-argument callable, delegate object/class, or dotted path
    frontend_checker: Any = True

    # Named strategies: ordered Cache-Control directive lists
    strategies: Dict[str, List[str]] = Field(default_factory=default_strategies)

    max_age: MaxAgeConfig = Field(default_factory=MaxAgeConfig)

    # Cachability matrix lists
    routes: RoutesConfig = Field(default_factory=RoutesConfig)
    responses: AllowDenyConfig = Field(default_factory=lambda: AllowDenyConfig(
        not_cachable=["FileResponse", "StreamingResponse", "RedirectResponse"],
    ))
    methods: AllowDenyConfig = Field(default_factory=lambda: AllowDenyConfig(
        cachable=["GET", "HEAD"],
    ))
    statuses: AllowDenyConfig = Field(default_factory=lambda: AllowDenyConfig(
        cachable=[200, 301],
    ))

    valid_forms: ValidFormsConfig = Field(default_factory=ValidFormsConfig)
    csrf_cookie_name: str = "csrftoken"

    domains: DomainsConfig = Field(default_factory=DomainsConfig)
    tags: TagsConfig = Field(default_factory=TagsConfig)
    store_tags: StoreTagsConfig = Field(default_factory=StoreTagsConfig)
    invalidations: InvalidationsConfig = Field(default_factory=InvalidationsConfig)
    cdn: CDNConfig = Field(default_factory=CDNConfig)

    class Config:
        env_prefix = "EDGE_FLUSH_"
        env_nested_delimiter = "__"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        frozen = True

    @property
    def is_batch_mode(self) -> bool:
        return self.invalidations.type == "batch"


@lru_cache(maxsize=1)
def get_settings() -> EdgeFlushSettings:
    """Get singleton Edge Flush configuration."""
    return EdgeFlushSettings()
