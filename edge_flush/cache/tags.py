"""
Tag Indexer

Collects the entities read while rendering a response, folds them into one
aggregate edge tag, and records which entities each URL depends on.

Flow per request:
1. ORM load events call add_entity() for every entity read
2. get_tags_hash() builds the edge tag and, when the response is cachable,
   dispatches a "store_tags" task
3. store_cache_tags() (worker) upserts the Url row, writes missing Tag rows
   and reactivates purged URLs that were just re-rendered
"""

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from starlette.requests import Request
from starlette.responses import Response

from edge_flush.cache.config import ANY_TAG, WARMED_URL_HEADER, EdgeFlushSettings
from edge_flush.cache.control import CacheControl
from edge_flush.cache.entities import (
    column_names,
    entity_identity,
    entity_table,
    is_blank,
    make_model_name,
)
from edge_flush.database.models import Url
from edge_flush.database.repository import TRANSIENT_ERRORS, UrlTagRepository
from edge_flush.utils.patterns import matches_any
from edge_flush.utils.urls import parse_host


logger = logging.getLogger(__name__)

STORE_TAGS_ATTEMPTS = 5


class TagIndexer:
    """
    Request-scoped tag collector.

    `tags` keeps insertion order and never holds duplicates.
    """

    def __init__(
        self,
        settings: EdgeFlushSettings,
        store: Optional[UrlTagRepository] = None,
        dispatcher: Any = None,
        cache_control: Optional[CacheControl] = None,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self.cache_control = cache_control

        self.tags: Dict[str, str] = {}
        self.processed_tags: Dict[str, bool] = {}

    # =========================================================================
    # COLLECTION
    # =========================================================================

    def add_entity(self, entity: Any, allowed_keys: Optional[Iterable[str]] = None) -> None:
        """Tag every non-blank column of an entity (once per entity per request)."""
        if not self.settings.enabled or not self.was_not_processed(entity):
            return

        for field in column_names(entity):
            self.add_tag(entity, field, allowed_keys)

    def add_tag(self, entity: Any, field: str, allowed_keys: Optional[Iterable[str]] = None) -> None:
        if not self.settings.enabled or is_blank(getattr(entity, field, None)):
            return

        for key in (ANY_TAG, field):
            tag = make_model_name(entity, key, allowed_keys)

            if tag and tag not in self.tags:
                self.tags[tag] = tag

    def was_not_processed(self, entity: Any) -> bool:
        """First sighting of this entity in this request. Entities without a key are skipped."""
        identity = entity_identity(entity)

        if identity is None:
            return False

        key = f"{entity_table(entity)}-{identity}"

        if key in self.processed_tags:
            return False

        self.processed_tags[key] = True
        return True

    def get_tags(self) -> List[str]:
        return [tag for tag in self.tags if self.tag_is_not_excluded(tag)]

    def tag_is_excluded(self, tag: str) -> bool:
        return matches_any(self.settings.tags.excluded_model_classes, tag)

    def tag_is_not_excluded(self, tag: str) -> bool:
        return not self.tag_is_excluded(tag)

    # =========================================================================
    # EDGE TAG
    # =========================================================================

    def make_edge_tag(self, tags: Optional[Iterable[str]] = None) -> str:
        """
        Aggregate tag from the configured format, e.g. "app-production-<sha1>".

        The hash covers the sorted tag list so equal sets give equal tags.
        """
        tags = self.get_tags() if tags is None else list(tags)

        digest = hashlib.sha1(", ".join(sorted(tags)).encode("utf-8")).hexdigest()

        return (
            self.settings.tags.format
            .replace("%environment%", self.settings.environment)
            .replace("%sha1%", digest)
        )

    def get_tags_hash(self, response: Response, request: Optional[Request] = None) -> str:
        """Edge tag for this response; schedules storage when it is cachable."""
        tags = self.get_tags()
        edge_tag = self.make_edge_tag(tags)

        if not self.settings.store_tags.enabled or self.cache_control is None:
            return edge_tag

        if not self.cache_control.is_cachable(response):
            return edge_tag

        try:
            self.dispatcher.dispatch(
                "store_tags",
                entities=tags,
                tags={"cdn": edge_tag},
                url=self.get_current_url(request),
            )
        except Exception as e:
            # Never block the response on tag storage
            logger.error(f"Failed to dispatch tag storage: {e}")

        return edge_tag

    def get_current_url(self, request: Optional[Request]) -> str:
        if request is None:
            return ""

        warmed = request.headers.get(WARMED_URL_HEADER)

        return warmed or str(request.url)

    # =========================================================================
    # STORAGE (worker)
    # =========================================================================

    def store_cache_tags(self, entities: Iterable[str], tags: Dict[str, str], url: str) -> List[str]:
        """
        Persist URL -> entity tag associations in one transaction.

        Retried on deadlocks and unique-key races; gives up with an error log.
        Returns the tag indexes written or confirmed.
        """
        if not self.settings.enabled or not self.settings.store_tags.enabled:
            return []

        if not url or not self.domain_allowed(url):
            return []

        models = [str(entity) for entity in entities if entity]

        logger.debug("STORE-TAGS: " + json.dumps({"url": url, "tags": tags, "models": models}))

        def _store(session) -> List[str]:
            url_row = self.store.find_or_create_url(session, url)

            indexes = []
            for model in models:
                index = self.make_tag_index(url_row, tags, model)
                self.store.insert_tag_if_absent(session, index, url_row.id, tags["cdn"], model)
                indexes.append(index)

            self.store.reactivate_urls_for_indexes(session, indexes)

            return indexes

        try:
            return self.store.run_in_transaction(_store, attempts=STORE_TAGS_ATTEMPTS)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Could not store cache tags for {url} after {STORE_TAGS_ATTEMPTS} attempts: {e}")
            return []

    def make_tag_index(self, url: Union[Url, int], tags: Dict[str, str], model: str) -> str:
        url_id = getattr(url, "id", url)

        return hashlib.sha1(f"{url_id}-{tags['cdn']}-{model}".encode("utf-8")).hexdigest()

    def domain_allowed(self, url: str) -> bool:
        if not url:
            return False

        domains = self.settings.domains
        host = parse_host(url)

        # An empty allow list admits every host, so a block list alone
        # only removes the hosts it names
        allowed = not domains.allowed or host in domains.allowed

        return allowed and host not in domains.blocked
