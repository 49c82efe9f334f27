"""
Repository Layer - URL/Tag Store

Guarded statements over edge_flush_urls and edge_flush_tags.
Handles all SQLAlchemy complexity internally.

Every update that changes URL state follows the same shape:
1. SELECT candidate ids ... ORDER BY id FOR UPDATE   (row locks)
2. UPDATE ... WHERE id IN (<locked ids>)
both inside one transaction, so two concurrent sweep/invalidation passes
never process the same URL twice.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import Boolean, DateTime, func, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, aliased, sessionmaker

from edge_flush.utils.urls import limit, sanitize_url, url_hash
from .models import Tag, Url

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Write conflicts worth retrying: deadlocks, serialization failures, and
# concurrent inserts of the same url_hash / tag index
TRANSIENT_ERRORS = (OperationalError, IntegrityError)


class UrlTagRepository:
    """
    Persistence for Url and Tag rows.

    Public methods own their transaction. Methods taking a `session` are
    building blocks for callers composing a larger transaction through
    run_in_transaction().
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def run_in_transaction(self, callback: Callable[[Session], T], attempts: int = 1) -> T:
        """
        Run callback inside a transaction, retrying on transient conflicts.

        Each attempt gets a fresh session. The last failure is re-raised.
        """
        attempt = 0

        while True:
            attempt += 1
            session = self.session_factory()
            try:
                with session.begin():
                    return callback(session)
            except TRANSIENT_ERRORS as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"Transient database conflict (attempt {attempt}/{attempts}): {e}")
            finally:
                session.close()

    def _lock_ids(self, session: Session, *criteria) -> List[int]:
        """Select and row-lock matching url ids."""
        stmt = (
            select(Url.id)
            .where(*criteria)
            .order_by(Url.id)
            .with_for_update()
        )
        return list(session.execute(stmt).scalars().all())

    def _update_ids(self, session: Session, ids: List[int], values: Dict[str, Any]) -> int:
        if not ids:
            return 0

        session.execute(
            update(Url)
            .where(Url.id.in_(ids))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return len(ids)

    # =========================================================================
    # TAG STORAGE (composed by TagIndexer.store_cache_tags)
    # =========================================================================

    def find_or_create_url(self, session: Session, url: str) -> Url:
        """
        Content-addressed upsert by url_hash.

        An existing row gets its popularity counter bumped.
        """
        normalized = sanitize_url(url)
        hashed = url_hash(normalized)

        existing = session.execute(
            select(Url).where(Url.url_hash == hashed)
        ).scalar_one_or_none()

        if existing is not None:
            session.execute(
                update(Url)
                .where(Url.id == existing.id)
                .values(hits=Url.hits + 1)
                .execution_options(synchronize_session=False)
            )
            return existing

        record = Url(
            url=limit(normalized),
            url_hash=hashed,
            hits=1,
            is_valid=True,
            obsolete=False,
        )
        session.add(record)
        session.flush()

        return record

    def insert_tag_if_absent(
        self,
        session: Session,
        index: str,
        url_id: int,
        tag: str,
        model: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        INSERT ... SELECT ... WHERE NOT EXISTS on the deterministic index.

        Returns True if a row was written.
        """
        now = now or datetime.utcnow()
        existing = aliased(Tag)

        source = select(
            literal(index),
            literal(url_id),
            literal(tag),
            literal(model),
            literal(True, Boolean()),
            literal(False, Boolean()),
            literal(now, DateTime()),
            literal(now, DateTime()),
        ).where(
            ~select(existing.index).where(existing.index == index).exists()
        )

        result = session.execute(
            insert(Tag).from_select(
                ["index", "url_id", "tag", "model", "is_valid", "obsolete", "created_at", "updated_at"],
                source,
            )
        )

        return bool(result.rowcount)

    def reactivate_urls_for_indexes(self, session: Session, indexes: List[str]) -> int:
        """
        Purged URLs whose tag association was just (re)written are fresh again.
        """
        if not indexes:
            return 0

        associated = select(Tag.url_id).where(
            Tag.index.in_(indexes),
            Tag.is_valid == True,
            Tag.obsolete == False,
        )

        ids = self._lock_ids(
            session,
            Url.is_valid == True,
            Url.was_purged_at.isnot(None),
            Url.id.in_(associated),
        )

        return self._update_ids(session, ids, {
            "obsolete": False,
            "was_purged_at": None,
            "invalidation_id": None,
        })

    # =========================================================================
    # INVALIDATION STATE
    # =========================================================================

    def obsolete_urls(self) -> List[Url]:
        """
        Valid, obsolete, not yet purged URLs.

        Busiest pages first, so they are purged first when capacity is limited.
        """
        def _select(session: Session) -> List[Url]:
            rows = session.execute(
                select(Url)
                .where(
                    Url.was_purged_at.is_(None),
                    Url.obsolete == True,
                    Url.is_valid == True,
                )
                .order_by(Url.hits.desc(), Url.id.asc())
            ).scalars().all()
            return list(rows)

        return self.run_in_transaction(_select)

    def edge_tags_for_models(self, models: List[str]) -> List[str]:
        """Distinct Cache-Tag values of the pages that read any of the entity tag names."""
        if not models:
            return []

        def _select(session: Session) -> List[str]:
            rows = session.execute(
                select(Tag.tag)
                .where(Tag.is_valid == True, Tag.model.in_(models))
                .distinct()
                .order_by(Tag.tag)
            ).scalars().all()
            return list(rows)

        return self.run_in_transaction(_select)

    def mark_obsolete_by_models(self, models: List[str]) -> int:
        """Mark fresh URLs associated with any of the entity tag names as obsolete."""
        associated = select(Tag.url_id).where(
            Tag.is_valid == True,
            Tag.model.in_(models),
        )
        return self._mark_obsolete(associated)

    def mark_obsolete_by_url_ids(self, url_ids: List[int]) -> int:
        """Mark fresh URLs (that have tag associations) obsolete by id."""
        associated = select(Tag.url_id).where(
            Tag.is_valid == True,
            Tag.url_id.in_(url_ids),
        )
        return self._mark_obsolete(associated)

    def _mark_obsolete(self, associated) -> int:
        def _update(session: Session) -> int:
            # Not obsolete, and not purged: a purged URL is waiting for a
            # warm-up or a visitor to request it
            ids = self._lock_ids(
                session,
                Url.is_valid == True,
                Url.obsolete == False,
                Url.was_purged_at.is_(None),
                Url.id.in_(associated),
            )
            return self._update_ids(session, ids, {"obsolete": True})

        return self.run_in_transaction(_update)

    @staticmethod
    def _unchanged_since(sent_at: Optional[datetime]) -> list:
        """
        Rows re-rendered, warmed or re-marked after the purge was sent carry
        a newer edge copy (or a newer change) than the purge covered.
        """
        if sent_at is None:
            return []

        return [or_(Url.updated_at.is_(None), Url.updated_at <= sent_at)]

    def mark_purged(
        self,
        url_ids: List[int],
        invalidation_id: str,
        now: Optional[datetime] = None,
        sent_at: Optional[datetime] = None,
    ) -> int:
        """
        Record a confirmed CDN purge for the listed URLs.

        Only rows still obsolete are marked: a row reactivated since the id
        list was read is fresh at the edge and must stay FRESH.
        """
        if not url_ids:
            return 0

        now = now or datetime.utcnow()

        def _update(session: Session) -> int:
            ids = self._lock_ids(
                session,
                Url.is_valid == True,
                Url.obsolete == True,
                Url.id.in_(url_ids),
                *self._unchanged_since(sent_at),
            )
            return self._update_ids(session, ids, {
                "was_purged_at": now,
                "invalidation_id": invalidation_id,
            })

        return self.run_in_transaction(_update)

    def mark_all_purged(
        self,
        invalidation_id: str,
        now: Optional[datetime] = None,
        sent_at: Optional[datetime] = None,
    ) -> int:
        """Record a full flush: every valid URL that is unpurged or fresh."""
        now = now or datetime.utcnow()

        def _update(session: Session) -> int:
            ids = self._lock_ids(
                session,
                Url.is_valid == True,
                or_(Url.was_purged_at.is_(None), Url.obsolete == False),
                *self._unchanged_since(sent_at),
            )
            return self._update_ids(session, ids, {
                "was_purged_at": now,
                "invalidation_id": invalidation_id,
            })

        return self.run_in_transaction(_update)

    def reset_all_urls(self, now: Optional[datetime] = None) -> int:
        """After a global CDN flush every URL is obsolete and purged."""
        now = now or datetime.utcnow()

        def _update(session: Session) -> int:
            ids = self._lock_ids(session)
            return self._update_ids(session, ids, {
                "obsolete": True,
                "was_purged_at": now,
            })

        return self.run_in_transaction(_update)

    def mark_warmed(self, url_ids: Iterable[int]) -> int:
        """A warming agent re-fetched these URLs: they are fresh again."""
        url_ids = [int(url_id) for url_id in url_ids]
        if not url_ids:
            return 0

        def _update(session: Session) -> int:
            ids = self._lock_ids(session, Url.is_valid == True, Url.id.in_(url_ids))
            return self._update_ids(session, ids, {
                "obsolete": False,
                "was_purged_at": None,
                "invalidation_id": None,
            })

        return self.run_in_transaction(_update)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_url(self, url_id: int) -> Optional[Url]:
        return self.run_in_transaction(lambda session: session.get(Url, url_id))

    def find_url(self, url: str) -> Optional[Url]:
        hashed = url_hash(url)
        return self.run_in_transaction(
            lambda session: session.execute(
                select(Url).where(Url.url_hash == hashed)
            ).scalar_one_or_none()
        )

    def stats(self) -> Dict[str, int]:
        """Row counts per URL state."""
        def _count(session: Session) -> Dict[str, int]:
            def count(*criteria) -> int:
                return session.execute(
                    select(func.count()).select_from(Url).where(*criteria)
                ).scalar_one()

            return {
                "urls": count(),
                "tags": session.execute(select(func.count()).select_from(Tag)).scalar_one(),
                "fresh": count(Url.is_valid == True, Url.obsolete == False),
                "obsolete": count(
                    Url.is_valid == True,
                    Url.obsolete == True,
                    Url.was_purged_at.is_(None),
                ),
                "purged": count(Url.is_valid == True, Url.was_purged_at.isnot(None)),
            }

        return self.run_in_transaction(_count)
