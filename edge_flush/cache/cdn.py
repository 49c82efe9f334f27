"""
CDN Services

Thin clients for the CDN provider's invalidation API.

Contract:
- invalidate(invalidation) -> Invalidation  (success flag set, never raises)
- invalidate_all() -> Invalidation
- max_urls() -> int                          (per-call invalidation ceiling)

Supports:
- Cloudflare (purge by URL, Cache-Tag, prefix or everything)
- Null service (CDN disabled)
"""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from edge_flush.cache.config import EdgeFlushSettings
from edge_flush.cache.exceptions import CDNServiceError
from edge_flush.cache.invalidation import Invalidation, InvalidationType


logger = logging.getLogger(__name__)

FULL_FLUSH_PATHS = {"*", "/*"}


class CDNService(ABC):
    """Base class for CDN providers."""

    def __init__(self, settings: EdgeFlushSettings):
        self.settings = settings

    @abstractmethod
    def invalidate(self, invalidation: Invalidation) -> Invalidation:
        """Purge the invalidation's items (or paths) at the edge."""

    @abstractmethod
    def invalidate_all(self) -> Invalidation:
        """Purge everything."""

    def max_urls(self) -> int:
        return self.settings.cdn.max_urls

    def enabled(self) -> bool:
        return True

    def tag_headers(self, edge_tag: str) -> Dict[str, str]:
        """Response headers carrying the aggregate edge tag."""
        return {"Cache-Tag": edge_tag}


class NullCDN(CDNService):
    """No CDN configured: nothing is ever purged."""

    def enabled(self) -> bool:
        return False

    def invalidate(self, invalidation: Invalidation) -> Invalidation:
        return invalidation.set_success(False)

    def invalidate_all(self) -> Invalidation:
        return Invalidation.unsuccessful()


class CloudflareCDN(CDNService):
    """
    Purges Cloudflare cache through the zone purge_cache endpoint.

    Cache Tags require a Cloudflare Enterprise plan; URL and prefix
    purging work on every plan.
    """

    API_URL = "https://api.cloudflare.com/client/v4/zones/{zone_id}/purge_cache"

    def __init__(
        self,
        settings: EdgeFlushSettings,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(settings)
        self.zone_id = settings.cdn.cloudflare_zone_id
        self.api_token = settings.cdn.cloudflare_api_token
        self._client = client

    def enabled(self) -> bool:
        return bool(self.zone_id and self.api_token)

    def tag_headers(self, edge_tag: str) -> Dict[str, str]:
        return {
            # Cloudflare Cache-Tag format
            "Cache-Tag": edge_tag,
            # Fastly/Varnish Surrogate-Key format
            "Surrogate-Key": edge_tag,
        }

    def _client_or_new(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.settings.cdn.timeout)
        return self._client

    def _purge(self, payload: Dict) -> tuple:
        if not self.enabled():
            return False, None

        try:
            response = self._client_or_new().post(
                self.API_URL.format(zone_id=self.zone_id),
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"CDN purge error: {e}")
            return False, None

        try:
            body = response.json()
        except ValueError:
            body = None

        success = response.status_code == 200 and bool((body or {}).get("success"))

        if not success:
            logger.warning(f"CDN purge failed (status {response.status_code}): {body}")

        return success, body

    def make_payload(self, invalidation: Invalidation) -> Dict:
        if invalidation.must_invalidate_all or invalidation.paths:
            paths = invalidation.paths
            if not paths or FULL_FLUSH_PATHS.intersection(paths):
                return {"purge_everything": True}
            return {"prefixes": paths}

        if invalidation.type == InvalidationType.TAG:
            return {"tags": invalidation.tag_names()}

        return {"files": invalidation.url_names()}

    def invalidate(self, invalidation: Invalidation) -> Invalidation:
        payload = self.make_payload(invalidation)

        success, body = self._purge(payload)

        if success:
            logger.info(f"CDN purged: {payload}")

        return invalidation.set_success(success, body)

    def invalidate_all(self) -> Invalidation:
        success, body = self._purge({"purge_everything": True})

        if success:
            logger.warning("CDN cache purged completely!")

        invalidation = Invalidation().set_must_invalidate_all(True)
        return invalidation.set_success(success, body)


def resolve_cdn_service(settings: EdgeFlushSettings) -> CDNService:
    """
    Instantiate the configured CDN service class.

    Raises CDNServiceError when the class is not configured or cannot be found.
    """
    path = (settings.cdn.service or "").strip()

    if not path:
        raise CDNServiceError.missing_service()

    module_name, _, class_name = path.rpartition(".")

    try:
        service_class = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError, ValueError):
        raise CDNServiceError.class_not_found(path)

    if not (isinstance(service_class, type) and issubclass(service_class, CDNService)):
        raise CDNServiceError.class_not_found(path)

    return service_class(settings)
