"""Fixtures for API tests: an app over the in-memory store and fake Google."""

from __future__ import annotations

import httpx
import pytest

from todo_studio.api.app import create_app
from todo_studio.api.deps import PRINCIPAL_HEADER


@pytest.fixture
def api_app(app_config, store, http_client, recording_sleep):
    return create_app(app_config, store=store, http_client=http_client, sleep=recording_sleep)


@pytest.fixture
async def client(api_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=api_app), base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def as_user():
    """Headers identifying *user* to the API."""

    def _headers(user) -> dict[str, str]:
        return {PRINCIPAL_HEADER: user.id}

    return _headers
