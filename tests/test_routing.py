"""
Tests for the FastAPI integration.

These tests verify (end to end, through TestClient):
- Cache-Control and Cache-Tag headers on cachable responses
- URL -> entity tags stored after the response
- Opt-outs: do_not_cache_response, route deny lists, methods, disabled
- Entity changes marking the rendered URLs obsolete
"""

import pytest
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from sqlalchemy import select
from starlette.background import BackgroundTask

from edge_flush.cache.config import WARMED_URL_HEADER
from edge_flush.cache.listeners import register_listeners
from edge_flush.cache.routing import (
    EdgeFlushRoute,
    cache_strategy,
    do_not_cache_response,
    get_cache_control,
    get_tag_indexer,
    max_age,
)
from edge_flush.database.models import Tag, Url

from conftest import Post, RecordingDispatcher


DO_NOT_CACHE = "max-age=0, no-cache, no-store, private"
CACHE_WEEK = "max-age=604800, public"


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def service(make_edge_flush, dispatcher):
    return make_edge_flush(dispatcher=dispatcher)


@pytest.fixture
def listeners(service, session_factory):
    remove = register_listeners(Post, session_factory, service)
    yield
    remove()


@pytest.fixture
def background_calls():
    return []


@pytest.fixture
def app(session_factory, listeners, background_calls):
    router = APIRouter(route_class=EdgeFlushRoute)

    def post_payload(post):
        return {"id": post.id, "title": post.title}

    @router.get("/posts/{post_id}", name="posts.show")
    async def show_post(post_id: int):
        with session_factory() as db:
            return post_payload(db.get(Post, post_id))

    @router.put("/posts/{post_id}", name="posts.update")
    async def update_post(post_id: int, request: Request):
        data = await request.json()
        with session_factory() as db:
            post = db.get(Post, post_id)
            post.title = data["title"]
            db.commit()
            return post_payload(post)

    @router.delete("/posts/{post_id}", name="posts.delete")
    async def delete_post(post_id: int):
        with session_factory() as db:
            db.delete(db.get(Post, post_id))
            db.commit()
        return {"deleted": post_id}

    @router.get("/short/{post_id}", name="posts.short", dependencies=[Depends(max_age(300))])
    async def short_post(post_id: int):
        with session_factory() as db:
            return post_payload(db.get(Post, post_id))

    @router.get("/account", name="account", dependencies=[Depends(do_not_cache_response)])
    async def account():
        return {"user": "me"}

    @router.get("/forced", name="forced", dependencies=[Depends(cache_strategy("do-not-cache"))])
    async def forced():
        return {"ok": True}

    @router.get("/admin/dashboard", name="admin.dashboard")
    async def admin_dashboard():
        return {"ok": True}

    @router.get("/explicit", name="explicit")
    async def explicit(tags=Depends(get_tag_indexer), cache_control=Depends(get_cache_control)):
        tags.add_entity(Post(id=42, title="Virtual"))
        cache_control.set_max_age(60)
        return {"ok": True}

    @router.get("/with-background", name="with_background")
    async def with_background():
        return JSONResponse(
            {"ok": True},
            background=BackgroundTask(background_calls.append, "endpoint"),
        )

    app = FastAPI()
    app.include_router(router)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def stored_models(session_factory, url):
    with session_factory() as db:
        row = db.execute(select(Url).where(Url.url == url)).scalar_one_or_none()
        if row is None:
            return None
        return [tag.model for tag in db.execute(select(Tag).where(Tag.url_id == row.id)).scalars()]


# =============================================================================
# HEADER TESTS
# =============================================================================

class TestHeaders:
    """Test response headers."""

    def test_cachable_response(self, client, add_posts):
        post_id, = add_posts("Hello")

        response = client.get(f"/posts/{post_id}")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == CACHE_WEEK
        assert response.headers["Cache-Tag"].startswith("app-test-")

    def test_same_entities_same_edge_tag(self, client, add_posts):
        post_id, = add_posts("Hello")

        first = client.get(f"/posts/{post_id}").headers["Cache-Tag"]
        second = client.get(f"/posts/{post_id}").headers["Cache-Tag"]

        assert first == second

    def test_different_entities_different_edge_tag(self, client, add_posts):
        first_id, second_id = add_posts("One", "Two")

        first = client.get(f"/posts/{first_id}").headers["Cache-Tag"]
        second = client.get(f"/posts/{second_id}").headers["Cache-Tag"]

        assert first != second

    def test_max_age_dependency(self, client, add_posts):
        post_id, = add_posts("Hello")

        response = client.get(f"/short/{post_id}")

        assert response.headers["Cache-Control"] == "max-age=300, public"

    def test_explicit_max_age(self, client):
        assert client.get("/explicit").headers["Cache-Control"] == "max-age=60, public"

    def test_do_not_cache_dependency(self, client):
        response = client.get("/account")

        assert response.headers["Cache-Control"] == DO_NOT_CACHE
        assert "Cache-Tag" not in response.headers

    def test_forced_strategy(self, client):
        assert client.get("/forced").headers["Cache-Control"] == DO_NOT_CACHE

    def test_non_cachable_method(self, client, add_posts):
        post_id, = add_posts("Hello")

        response = client.put(f"/posts/{post_id}", json={"title": "Changed"})

        assert response.headers["Cache-Control"] == DO_NOT_CACHE
        assert "Cache-Tag" not in response.headers

    def test_route_deny_list(self, make_edge_flush, dispatcher, app):
        make_edge_flush(dispatcher=dispatcher, routes={"not_cachable": ["admin.*"]})

        response = TestClient(app).get("/admin/dashboard")

        assert response.headers["Cache-Control"] == DO_NOT_CACHE

    def test_disabled(self, make_edge_flush, dispatcher, app, session_factory, add_posts):
        make_edge_flush(dispatcher=dispatcher, enabled=False)
        post_id, = add_posts("Hello")

        response = TestClient(app).get(f"/posts/{post_id}")

        assert response.headers["Cache-Control"] == DO_NOT_CACHE
        assert stored_models(session_factory, f"http://testserver/posts/{post_id}") is None


# =============================================================================
# TAG STORAGE TESTS
# =============================================================================

class TestTagStorage:
    """Test URL -> entity tag storage after the response."""

    def test_tags_stored(self, client, session_factory, add_posts):
        post_id, = add_posts("Hello")

        client.get(f"/posts/{post_id}")

        models = stored_models(session_factory, f"http://testserver/posts/{post_id}")
        assert f"Post-{post_id}@*" in models
        assert f"Post-{post_id}@title" in models
        assert f"Post-{post_id}@body" in models

    def test_explicit_entities(self, client, session_factory):
        client.get("/explicit")

        models = stored_models(session_factory, "http://testserver/explicit")
        assert sorted(models) == ["Post-42@*", "Post-42@id", "Post-42@title"]

    def test_warmed_url_header(self, client, session_factory, add_posts):
        post_id, = add_posts("Hello")

        client.get(f"/posts/{post_id}", headers={WARMED_URL_HEADER: "https://example.com/blog/hello"})

        assert stored_models(session_factory, "https://example.com/blog/hello") is not None
        assert stored_models(session_factory, f"http://testserver/posts/{post_id}") is None

    def test_nothing_stored_for_non_cachable(self, client, session_factory):
        client.get("/account")

        assert stored_models(session_factory, "http://testserver/account") is None

    def test_endpoint_background_still_runs(self, client, session_factory, background_calls):
        client.get("/with-background")

        assert background_calls == ["endpoint"]
        assert stored_models(session_factory, "http://testserver/with-background") == []

    def test_entities_outside_requests_not_tagged(self, listeners, session_factory, add_posts):
        post_id, = add_posts("Hello")

        with session_factory() as db:
            db.get(Post, post_id)

        with session_factory() as db:
            assert db.execute(select(Url)).first() is None


# =============================================================================
# INVALIDATION FLOW TESTS
# =============================================================================

class TestInvalidationFlow:
    """Rendered URLs become obsolete when their entities change."""

    def test_update_marks_url_obsolete(self, client, service, dispatcher, store, add_posts):
        post_id, other_id = add_posts("Hello", "Other")
        client.get(f"/posts/{post_id}")
        client.get(f"/posts/{other_id}")

        client.put(f"/posts/{post_id}", json={"title": "Changed"})

        assert dispatcher.names() == ["invalidate_tags"]
        invalidation = dispatcher.payloads("invalidate_tags")[0]["invalidation"]
        assert invalidation.tag_names() == [f"Post-{post_id}@title"]

        dispatcher.run_pending()

        assert store.find_url(f"http://testserver/posts/{post_id}").obsolete is True
        assert store.find_url(f"http://testserver/posts/{other_id}").obsolete is False

    def test_delete_marks_url_obsolete(self, client, dispatcher, store, add_posts):
        post_id, = add_posts("Hello")
        client.get(f"/posts/{post_id}")

        client.delete(f"/posts/{post_id}")

        invalidation = dispatcher.payloads("invalidate_tags")[0]["invalidation"]
        assert invalidation.tag_names() == [f"Post-{post_id}@*"]

        dispatcher.run_pending()

        assert store.find_url(f"http://testserver/posts/{post_id}").obsolete is True

    def test_sweep_then_rerender(self, client, service, dispatcher, store, add_posts):
        post_id, = add_posts("Hello")
        url = f"http://testserver/posts/{post_id}"
        client.get(f"/posts/{post_id}")
        client.put(f"/posts/{post_id}", json={"title": "Changed"})
        dispatcher.run_pending()

        service.orchestrator.invalidate_obsolete_tags()

        assert service.cdn.invalidations[0]["items"] == [url]
        assert store.find_url(url).was_purged_at is not None

        client.get(f"/posts/{post_id}")

        row = store.find_url(url)
        assert row.obsolete is False
        assert row.was_purged_at is None


class TestImmediateInvalidationFlow:
    """Immediate mode purges the Cache-Tag the page was served with."""

    @pytest.fixture
    def service(self, make_edge_flush, dispatcher):
        return make_edge_flush(dispatcher=dispatcher, invalidations={"type": "immediate"})

    def test_update_purges_served_cache_tag(self, client, service, dispatcher, store, add_posts):
        post_id, other_id = add_posts("Hello", "Other")
        served = client.get(f"/posts/{post_id}").headers["Cache-Tag"]
        client.get(f"/posts/{other_id}")

        client.put(f"/posts/{post_id}", json={"title": "Changed"})
        dispatcher.run_pending()

        assert len(service.cdn.invalidations) == 1
        assert service.cdn.invalidations[0]["type"] == "tag"
        assert service.cdn.invalidations[0]["items"] == [served]
        assert store.find_url(f"http://testserver/posts/{post_id}").obsolete is False
