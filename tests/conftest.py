"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import hashlib
import pytest
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from edge_flush.cache.cdn import CDNService
from edge_flush.cache.config import EdgeFlushSettings
from edge_flush.cache.dispatch import InlineDispatcher, TaskDispatcher, TaskHandler
from edge_flush.cache.invalidation import Invalidation
from edge_flush.cache.service import EdgeFlush, set_edge_flush
from edge_flush.database import Url, UrlTagRepository, init_db, make_session_factory


# ============================================================================
# Application Models
# ============================================================================

AppBase = declarative_base()


class Post(AppBase):
    """Entity rendered by the test application."""
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True)
    title = Column(String(200))
    body = Column(Text)
    slug = Column(String(200))
    updated_at = Column(DateTime, default=datetime.utcnow)


class Membership(AppBase):
    """Entity with a composite primary key."""
    __tablename__ = "memberships"

    user_id = Column(Integer, primary_key=True)
    group_id = Column(Integer, primary_key=True)
    role = Column(String(50))


# ============================================================================
# Test Doubles
# ============================================================================

class FakeCDN(CDNService):
    """Records invalidations; outcomes are scripted."""

    def __init__(
        self,
        settings: EdgeFlushSettings,
        succeed: bool = True,
        flush_results: Optional[List[bool]] = None,
        enabled: bool = True,
        max_urls: Optional[int] = None,
    ):
        super().__init__(settings)
        self.succeed = succeed
        self.flush_results = list(flush_results or [])
        self._enabled = enabled
        self._max_urls = max_urls

        self.invalidations: List[Dict[str, Any]] = []
        self.flush_calls = 0

    def enabled(self) -> bool:
        return self._enabled

    def max_urls(self) -> int:
        return self._max_urls if self._max_urls is not None else super().max_urls()

    def invalidate(self, invalidation: Invalidation) -> Invalidation:
        self.invalidations.append(invalidation.to_dict())
        return invalidation.set_success(self.succeed)

    def invalidate_all(self) -> Invalidation:
        self.flush_calls += 1
        success = self.flush_results.pop(0) if self.flush_results else self.succeed
        return Invalidation().set_must_invalidate_all(True).set_success(success)


class RecordingDispatcher(TaskDispatcher):
    """Keeps dispatched tasks until run_pending() is called."""

    def __init__(self, handlers: Optional[Dict[str, TaskHandler]] = None):
        super().__init__(handlers)
        self.pending: List[Any] = []

    def submit(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        self.pending.append((task_name, handler, payload))

    def names(self) -> List[str]:
        return [task_name for task_name, _, _ in self.pending]

    def payloads(self, task_name: str) -> List[Dict[str, Any]]:
        return [payload for name, _, payload in self.pending if name == task_name]

    def run_pending(self) -> None:
        pending, self.pending = self.pending, []
        for task_name, handler, payload in pending:
            self.run(task_name, handler, payload)


def make_settings(**overrides) -> EdgeFlushSettings:
    """Settings isolated from any local .env file."""
    return EdgeFlushSettings(_env_file=None, **overrides)


def make_request(
    method: str = "GET",
    path: str = "/posts/1",
    route_name: Optional[str] = "posts.show",
    dependencies: Optional[List[Any]] = None,
    cookies: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Request:
    """Bare Starlette request for https://example.com{path}."""
    raw_headers = [(b"host", b"example.com")]

    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode(), value.encode()))

    if cookies:
        cookie = "; ".join(f"{name}={value}" for name, value in cookies.items())
        raw_headers.append((b"cookie", cookie.encode()))

    scope = {
        "type": "http",
        "method": method,
        "scheme": "https",
        "server": ("example.com", 443),
        "path": path,
        "query_string": b"",
        "headers": raw_headers,
        "state": {},
    }

    if route_name is not None or dependencies:
        scope["route"] = SimpleNamespace(name=route_name, dependencies=dependencies or [])

    return Request(scope)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    AppBase.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory) -> UrlTagRepository:
    return UrlTagRepository(session_factory)


@pytest.fixture
def add_posts(session_factory):
    """Insert posts and return their ids."""

    def _add(*titles: str) -> List[int]:
        with session_factory() as db:
            posts = [Post(title=title, body=f"{title} body", slug=title.lower()) for title in titles]
            db.add_all(posts)
            db.commit()
            return [post.id for post in posts]

    return _add


@pytest.fixture
def add_url(store):
    """Insert a Url row in the given state and return its id."""

    def _add(
        url: str,
        models: Optional[List[str]] = None,
        obsolete: bool = False,
        purged: bool = False,
        hits: int = 1,
        edge_tag: str = "app-test-abc",
    ) -> int:
        def _create(session) -> int:
            row = store.find_or_create_url(session, url)
            row_id = row.id
            for model in models or []:
                index = hashlib.sha1(f"{row_id}-{edge_tag}-{model}".encode("utf-8")).hexdigest()
                store.insert_tag_if_absent(session, index, row_id, edge_tag, model)
            session.query(Url).filter(Url.id == row_id).update({
                "obsolete": obsolete or purged,
                "was_purged_at": datetime.utcnow() if purged else None,
                "hits": hits,
            })
            return row_id

        return store.run_in_transaction(_create)

    return _add


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def settings() -> EdgeFlushSettings:
    return make_settings(environment="test")


@pytest.fixture
def make_edge_flush(session_factory):
    """Build and install an EdgeFlush container from settings overrides."""
    def _make(
        dispatcher: Optional[TaskDispatcher] = None,
        cdn_options: Optional[Dict[str, Any]] = None,
        **overrides,
    ) -> EdgeFlush:
        overrides.setdefault("environment", "test")
        settings = make_settings(**overrides)

        edge_flush = EdgeFlush(
            settings=settings,
            session_factory=session_factory,
            cdn=FakeCDN(settings, **(cdn_options or {})),
            dispatcher=dispatcher or InlineDispatcher(),
        )
        set_edge_flush(edge_flush)

        return edge_flush

    yield _make

    set_edge_flush(None)


@pytest.fixture
def edge_flush(make_edge_flush) -> EdgeFlush:
    return make_edge_flush()
