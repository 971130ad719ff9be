"""Tests for optional HTTP basic auth on the admin API."""

from __future__ import annotations

import base64

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from server.auth.middleware import AuthConfig, AuthMiddleware, check_basic_auth

CONFIG = AuthConfig(enabled=True, username="admin", password="s3cret")


def _basic(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


def _app(config: AuthConfig) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AuthMiddleware, config=config)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/v1/admin/prompts")
    async def prompts():
        return {"items": []}

    return app


def test_uses_basic_auth_requires_both_credentials():
    assert CONFIG.uses_basic_auth
    assert not AuthConfig(enabled=True, username="admin", password="").uses_basic_auth
    assert not AuthConfig(enabled=False, username="admin", password="x").uses_basic_auth


def test_check_basic_auth():
    assert check_basic_auth(_basic("admin", "s3cret"), CONFIG)
    assert not check_basic_auth(_basic("admin", "wrong"), CONFIG)
    assert not check_basic_auth(_basic("root", "s3cret"), CONFIG)
    assert not check_basic_auth("Basic !!!notbase64", CONFIG)
    assert not check_basic_auth("Bearer token", CONFIG)
    assert not check_basic_auth(None, CONFIG)


@pytest.mark.asyncio
async def test_admin_routes_require_credentials():
    transport = ASGITransport(app=_app(CONFIG))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/v1/admin/prompts")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"].startswith("Basic realm=")
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

        resp = await client.get("/api/v1/admin/prompts", headers={"Authorization": _basic("admin", "s3cret")})
        assert resp.status_code == 200


@pytest.mark.asyncio
async def test_health_is_public():
    transport = ASGITransport(app=_app(CONFIG))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        assert (await client.get("/health")).status_code == 200


@pytest.mark.asyncio
async def test_disabled_auth_allows_everything():
    transport = ASGITransport(app=_app(AuthConfig()))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        assert (await client.get("/api/v1/admin/prompts")).status_code == 200
