"""
Tests for the authentication query surface.

These tests cover:
- is_authenticated / get_user against stored token sets
- The /api/session endpoint
- AuthGuardMiddleware on protected paths
- Session-scoped token sets when a session cookie is configured
"""

from collections.abc import AsyncGenerator

import httpx
import jwt
import pytest
import pytest_asyncio

from kinde_auth import flow
from kinde_auth.storage import TransientStore
from tests.conftest import query_of
from tests.test_storage import BrokenBackend


def make_id_token(**claims) -> str:
    return jwt.encode(claims, "provider-signing-key", algorithm="HS256")


class TestQueries:

    @pytest.mark.asyncio
    async def test_no_tokens(self, store):
        assert await flow.is_authenticated(store) is False
        assert await flow.get_user(store) is None

    @pytest.mark.asyncio
    async def test_empty_access_token_is_not_authenticated(self, store):
        await store.put("tokens", {"access_token": "", "refresh_token": "r"}, ttl_seconds=None)
        assert await flow.is_authenticated(store) is False

    @pytest.mark.asyncio
    async def test_stored_access_token_is_authenticated(self, store):
        await store.put("tokens", {"access_token": "a"}, ttl_seconds=None)
        assert await flow.is_authenticated(store) is True
        assert await flow.get_user(store) is None

    @pytest.mark.asyncio
    async def test_user_from_stored_id_token(self, store):
        id_token = make_id_token(sub="kp_1", email="ada@example.com")
        await store.put("tokens", {"access_token": "a", "id_token": id_token}, ttl_seconds=None)
        user = await flow.get_user(store)
        assert user.id == "kp_1"
        assert user.email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_unavailable_or_failing_storage(self):
        assert await flow.is_authenticated(None) is False
        assert await flow.is_authenticated(TransientStore(BrokenBackend())) is False

    @pytest.mark.asyncio
    async def test_session_scoped_lookup(self, store):
        await store.put("tokens:s1", {"access_token": "a"}, ttl_seconds=None)
        assert await flow.is_authenticated(store, "s1") is True
        assert await flow.is_authenticated(store, "s2") is False
        assert await flow.is_authenticated(store) is False


class TestSessionEndpoint:

    @pytest.mark.asyncio
    async def test_anonymous(self, client):
        response = await client.get("/api/session")
        assert response.status_code == 200
        assert response.json() == {"authenticated": False, "user": None}

    @pytest.mark.asyncio
    async def test_authenticated_with_user(self, client, store):
        id_token = make_id_token(sub="kp_1", email="ada@example.com", given_name="Ada")
        await store.put("tokens", {"access_token": "a", "id_token": id_token}, ttl_seconds=None)

        body = (await client.get("/api/session")).json()
        assert body["authenticated"] is True
        assert body["user"]["id"] == "kp_1"
        assert body["user"]["given_name"] == "Ada"

    @pytest.mark.asyncio
    async def test_storage_unavailable(self, config_holder, provider_client):
        from main import create_app

        app = create_app(store=None, config_provider=config_holder, http_client=provider_client)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost:8000") as c:
            response = await c.get("/api/session")
        assert response.status_code == 200
        assert response.json()["authenticated"] is False
        assert response.json()["error"] == "Storage not available"


class TestAuthGuard:

    @pytest_asyncio.fixture
    async def guarded_client(
        self, store, config_holder, provider_client
    ) -> AsyncGenerator[httpx.AsyncClient, None]:
        from main import create_app

        config_holder.update(protected_paths=("/dashboard",))
        app = create_app(store=store, config_provider=config_holder, http_client=provider_client)

        @app.get("/dashboard/reports")
        async def reports():
            return {"reports": []}

        @app.get("/public")
        async def public():
            return {"ok": True}

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost:8000") as c:
            yield c

    @pytest.mark.asyncio
    async def test_rejects_anonymous(self, guarded_client):
        response = await guarded_client.get("/dashboard/reports")
        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "error_description": "Login required"}

    @pytest.mark.asyncio
    async def test_allows_authenticated(self, guarded_client, store):
        await store.put("tokens", {"access_token": "a"}, ttl_seconds=None)
        response = await guarded_client.get("/dashboard/reports")
        assert response.status_code == 200
        assert response.json() == {"reports": []}

    @pytest.mark.asyncio
    async def test_unprotected_paths_pass(self, guarded_client):
        assert (await guarded_client.get("/public")).status_code == 200
        assert (await guarded_client.get("/api/session")).status_code == 200

    @pytest.mark.asyncio
    async def test_config_error_is_json_500(self, guarded_client, monkeypatch):
        from kinde_auth import endpoints

        def broken_config():
            raise ValueError("could not convert string to float: 'soon'")

        monkeypatch.setattr(endpoints, "_config_provider", broken_config)
        response = await guarded_client.get("/dashboard/reports")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal error"}

    def test_prefix_matching(self):
        from kinde_auth.middleware import AuthGuardMiddleware

        guard = AuthGuardMiddleware(app=None, protected_prefixes=("/dashboard/",))
        assert guard.is_protected("/dashboard")
        assert guard.is_protected("/dashboard/x")
        assert not guard.is_protected("/dashboards")


class TestSessionCookie:

    @pytest.mark.asyncio
    async def test_tokens_are_scoped_to_browser_session(self, client, config_holder, backend):
        config_holder.update(session_cookie="kinde_sid")

        login = await client.get("/api/auth/login")
        sid = login.cookies.get("kinde_sid")
        assert sid

        state = query_of(login.headers["location"])["state"]
        callback = await client.get(
            "/api/auth/kinde_callback", params={"code": "c", "state": state}
        )
        assert callback.status_code == 302
        assert f"kinde:tokens:{sid}" in backend.keys()
        assert "kinde:tokens" not in backend.keys()

        assert (await client.get("/api/session")).json()["authenticated"] is True
        client.cookies.clear()
        assert (await client.get("/api/session")).json()["authenticated"] is False

    @pytest.mark.asyncio
    async def test_logout_clears_only_own_session(self, client, config_holder, store):
        config_holder.update(session_cookie="kinde_sid")
        await store.put("tokens:mine", {"access_token": "a"}, ttl_seconds=None)
        await store.put("tokens:other", {"access_token": "b"}, ttl_seconds=None)

        client.cookies.set("kinde_sid", "mine")
        response = await client.get("/api/auth/logout")
        assert response.status_code == 302

        assert not (await store.get("tokens:mine")).found
        assert (await store.get("tokens:other")).found
