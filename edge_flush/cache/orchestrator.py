"""
Invalidation Orchestrator

Turns entity changes into CDN purges.

Modes:
- batch (default): changes mark the affected URLs obsolete; a periodic
  sweep (invalidate_obsolete_tags) purges them in one pass
- immediate: changes are sent straight to the CDN

URL state machine (Url rows):
    FRESH    --entity change------> OBSOLETE
    OBSOLETE --confirmed purge----> PURGED
    PURGED   --re-render / warm---> FRESH
"""

import logging
import time
from datetime import datetime
from typing import Any, Iterable, List, Optional

from edge_flush.cache.cdn import CDNService
from edge_flush.cache.config import ANY_TAG, EdgeFlushSettings
from edge_flush.cache.entities import changed_attributes, entity_name, make_model_name
from edge_flush.cache.exceptions import UnsupportedInvalidationError
from edge_flush.cache.invalidation import Invalidation, InvalidationType
from edge_flush.database.repository import UrlTagRepository
from edge_flush.utils.patterns import matches_any
from edge_flush.utils.urls import is_truncated


logger = logging.getLogger(__name__)

INVALIDATE_ALL_ATTEMPTS = 3
INVALIDATE_ALL_BACKOFF_SECONDS = 2


def as_list(entities: Any) -> List[Any]:
    if entities is None:
        return []

    if isinstance(entities, (list, tuple, set, frozenset)):
        return list(entities)

    return [entities]


class InvalidationOrchestrator:
    """
    Process-wide invalidation service.

    Stateless between calls: everything durable lives in the Url/Tag store.
    """

    def __init__(
        self,
        settings: EdgeFlushSettings,
        store: UrlTagRepository,
        cdn: CDNService,
        dispatcher: Any = None,
    ):
        self.settings = settings
        self.store = store
        self.cdn = cdn
        self.dispatcher = dispatcher

    def enabled(self) -> bool:
        return (
            self.settings.enabled
            and self.settings.invalidations.enabled
            and self.cdn.enabled()
        )

    # =========================================================================
    # ENTITY CHANGES
    # =========================================================================

    def dispatch_invalidations_for_model(self, entities: Any) -> Optional[Invalidation]:
        """
        Dispatch an "invalidate_tags" task for the changed fields of entities.

        Only fields that actually changed are considered, minus
        invalidations.properties_ignored.
        """
        entities = [
            entity for entity in as_list(entities)
            if not matches_any(self.settings.tags.excluded_model_classes, entity_name(entity))
        ]

        models = []
        for entity in entities:
            for key in changed_attributes(entity):
                if not self.granular_property_is_allowed(key, entity):
                    continue

                name = make_model_name(entity, key)
                if name and name not in models:
                    models.append(name)

        return self._dispatch_tags(models)

    def dispatch_invalidations_for_deleted_model(self, entities: Any) -> Optional[Invalidation]:
        """A deleted entity invalidates every page that read any of its fields."""
        models = []
        for entity in as_list(entities):
            if matches_any(self.settings.tags.excluded_model_classes, entity_name(entity)):
                continue

            name = make_model_name(entity, ANY_TAG)
            if name and name not in models:
                models.append(name)

        return self._dispatch_tags(models)

    def _dispatch_tags(self, models: List[str]) -> Optional[Invalidation]:
        if not models:
            return None

        invalidation = Invalidation.for_tags(models)

        logger.debug(f"Dispatching invalidation {invalidation.id} for {len(models)} tags: {models}")

        self.dispatcher.dispatch("invalidate_tags", invalidation=invalidation)

        return invalidation

    def granular_property_is_allowed(self, name: str, entity: Any = None) -> bool:
        """Ignored properties are listed by bare name ("updated_at") or "Post@updated_at"."""
        ignored = self.settings.invalidations.properties_ignored

        if name in ignored:
            return False

        return entity is None or f"{entity_name(entity)}@{name}" not in ignored

    # =========================================================================
    # INVALIDATION FLOW (worker)
    # =========================================================================

    def invalidate_tags(self, invalidation: Invalidation) -> None:
        """Task handler. An empty invalidation triggers an obsolete sweep."""
        if not self.settings.invalidations.enabled:
            return

        if invalidation.is_empty():
            self.invalidate_obsolete_tags()
            return

        if self.settings.is_batch_mode:
            self.mark_tags_as_obsolete(invalidation)
        else:
            self.dispatch_invalidations(invalidation)

    def invalidate_obsolete_tags(self) -> Optional[Invalidation]:
        """
        Sweep: purge every obsolete URL.

        Above the provider's per-call ceiling the whole cache is flushed instead.
        """
        if not self.enabled():
            return None

        rows = self.store.obsolete_urls()
        invalidation = Invalidation.for_urls(rows)

        if not rows:
            return invalidation

        if len(rows) >= self.get_max_invalidations():
            logger.info(f"{len(rows)} obsolete URLs: flushing the entire cache")
            return self.invalidate_entire_cache(invalidation)

        # A truncated URL would purge a different (or no) page at the edge
        truncated = [row for row in rows if is_truncated(row.url, row.url_hash)]
        if truncated:
            logger.info(f"{len(truncated)} obsolete URLs stored truncated: flushing the entire cache")
            return self.invalidate_entire_cache(invalidation)

        return self.dispatch_invalidations(invalidation)

    def get_max_invalidations(self) -> int:
        max_urls = self.cdn.max_urls()
        size = self.settings.invalidations.batch.size

        if size:
            return min(max_urls, size)

        return max_urls

    def mark_tags_as_obsolete(self, invalidation: Invalidation) -> int:
        if invalidation.type == InvalidationType.TAG:
            count = self.store.mark_obsolete_by_models(invalidation.tag_names())

        elif invalidation.type == InvalidationType.URL:
            count = self.store.mark_obsolete_by_url_ids(self._resolve_url_ids(invalidation))

        else:
            return 0

        logger.info(f"Invalidation {invalidation.id}: {count} URLs marked obsolete")

        return count

    def _resolve_url_ids(self, invalidation: Invalidation) -> List[int]:
        """Url rows carry their id; plain URL strings are looked up."""
        ids = []

        for item in invalidation.items:
            url_id = getattr(item, "id", None)

            if url_id is None and isinstance(item, str):
                row = self.store.find_url(item)
                url_id = row.id if row is not None else None

            if url_id is not None:
                ids.append(url_id)

        return ids

    def dispatch_invalidations(self, invalidation: Invalidation) -> Invalidation:
        """Send to the CDN; record the purge only when confirmed."""
        if invalidation.is_empty() or not self.enabled():
            return invalidation

        if invalidation.type == InvalidationType.TAG:
            invalidation = self.resolve_edge_tags(invalidation)

            if invalidation.is_empty():
                logger.debug(f"Tag invalidation {invalidation.id}: no cached page carries these tags")
                return invalidation.set_success(True)

        logger.info(f"Invalidating {len(invalidation.items)} items ({invalidation.id})")

        invalidation.sent_at = datetime.utcnow()
        invalidation = self.cdn.invalidate(invalidation)

        if not invalidation.success:
            # URLs stay obsolete: the next sweep retries them
            logger.warning(f"CDN invalidation {invalidation.id} failed; will retry on next sweep")

        elif invalidation.type == InvalidationType.TAG:
            # Immediate tag purges never marked anything obsolete
            logger.debug(f"Tag invalidation {invalidation.id} confirmed by the CDN")

        else:
            self.mark_urls_as_purged(invalidation)

        return invalidation

    def resolve_edge_tags(self, invalidation: Invalidation) -> Invalidation:
        """
        Entity tag names -> the Cache-Tag values stored for the pages that read them.

        Responses carry only the aggregate edge tag, never entity tag names.
        """
        models = invalidation.tag_names()
        edge_tags = self.store.edge_tags_for_models(models)

        logger.debug(f"Invalidation {invalidation.id}: {len(models)} entity tags -> {len(edge_tags)} edge tags")

        return invalidation.set_tags(edge_tags)

    def invalidate_entire_cache(self, invalidation: Invalidation) -> Invalidation:
        if not self.enabled():
            return invalidation

        invalidation.set_must_invalidate_all(True)
        invalidation.set_paths(self.settings.invalidations.batch.roots)

        logger.info(f"INVALIDATING: entire cache ({invalidation.paths})")

        invalidation.sent_at = datetime.utcnow()
        invalidation = self.cdn.invalidate(invalidation)

        if invalidation.success:
            self.mark_urls_as_purged(invalidation)
        else:
            logger.warning(f"CDN full flush {invalidation.id} failed; will retry on next sweep")

        return invalidation

    # =========================================================================
    # PURGE STATE
    # =========================================================================

    def mark_urls_as_purged(self, invalidation: Invalidation) -> int:
        if invalidation.must_invalidate_all:
            return self.store.mark_all_purged(invalidation.id, sent_at=invalidation.sent_at)

        if invalidation.type == InvalidationType.TAG:
            raise UnsupportedInvalidationError("Marking URLs purged from tag invalidations is not supported")

        return self.store.mark_purged(
            self._resolve_url_ids(invalidation),
            invalidation.id,
            sent_at=invalidation.sent_at,
        )

    def invalidate_all(self, force: bool = False) -> Invalidation:
        """
        Flush the whole CDN cache and reset every stored URL.

        Three attempts, two seconds apart.
        """
        if not self.enabled() and not force:
            return Invalidation.unsuccessful()

        attempts = 0
        result = Invalidation.unsuccessful()

        while attempts < INVALIDATE_ALL_ATTEMPTS:
            if attempts > 0:
                time.sleep(INVALIDATE_ALL_BACKOFF_SECONDS)

            attempts += 1
            result = self.cdn.invalidate_all()

            if result.success:
                break

        if not result.success:
            logger.error(f"CDN full flush failed after {attempts} attempts")
            return Invalidation.unsuccessful()

        count = self.store.reset_all_urls()

        logger.warning(f"CDN cache flushed: {count} URLs reset")

        return Invalidation.successful()

    def mark_urls_as_warmed(self, urls: Iterable[Any]) -> int:
        """Warming agent confirmation. Accepts Url rows, ids or URL strings."""
        ids = []

        for url in urls:
            if isinstance(url, str) and not url.isdigit():
                row = self.store.find_url(url)
                if row is not None:
                    ids.append(row.id)
            else:
                ids.append(int(getattr(url, "id", url)))

        return self.store.mark_warmed(ids)
