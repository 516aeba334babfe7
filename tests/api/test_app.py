import httpx
import pytest
from fastapi import FastAPI

from todo_studio.api.app import create_app
from todo_studio.config import AppConfig

pytestmark = pytest.mark.unit


class TestHealthEndpoint:
    async def test_health_returns_ok(self):
        app = create_app(AppConfig())
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCORSMiddleware:
    async def test_cors_allows_configured_origin(self):
        app = create_app(AppConfig(), cors_origins=["http://localhost:5173"])
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.options(
                "/api/health",
                headers={
                    "origin": "http://localhost:5173",
                    "access-control-request-method": "GET",
                },
            )
        assert response.status_code == 200
        assert response.headers.get("access-control-allow-origin") == "http://localhost:5173"

    async def test_cors_defaults_to_base_url(self):
        app = create_app(AppConfig(base_url="https://todo.example.com"))
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.options(
                "/api/health",
                headers={
                    "origin": "https://todo.example.com",
                    "access-control-request-method": "GET",
                },
            )
        assert response.headers.get("access-control-allow-origin") == "https://todo.example.com"


class TestAppFactory:
    def test_create_app_returns_fastapi_instance(self):
        assert isinstance(create_app(AppConfig()), FastAPI)

    def test_redirect_slashes_disabled(self):
        assert create_app(AppConfig()).router.redirect_slashes is False

    async def test_services_built_eagerly_with_store(self, api_app):
        assert api_app.state.services is not None

    def test_services_deferred_without_store(self):
        assert create_app(AppConfig()).state.services is None


class TestErrorEnvelope:
    async def test_missing_principal_is_401(self, client):
        response = await client.get("/api/tasks")
        assert response.status_code == 401
        assert response.json() == {
            "error": {"code": "unauthorized", "message": "Authentication required"}
        }

    async def test_unknown_principal_is_401(self, client):
        response = await client.get("/api/tasks", headers={"X-User-Id": "ghost"})
        assert response.status_code == 401

    async def test_unhandled_exception_is_500_envelope(self, api_app, client):
        @api_app.get("/api/boom")
        async def boom():
            raise RuntimeError("kaboom")

        response = await client.get("/api/boom")
        assert response.status_code == 500
        assert response.json() == {
            "error": {"code": "internal_error", "message": "Internal server error"}
        }
        assert "kaboom" not in response.text

    async def test_services_missing_is_500(self):
        app = create_app(AppConfig())
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/api/tasks", headers={"X-User-Id": "u"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_error"
