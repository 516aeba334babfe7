"""Integration settings, OAuth round trip, sync trigger and the inbound webhook."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from todo_studio.api.app import create_app
from todo_studio.config import RateLimitConfig
from todo_studio.integrations.google import GOOGLE_OAUTH_AUTHORIZE_URL

pytestmark = pytest.mark.unit

APP_URL = "https://todo.example.com"
STATE_COOKIE = "google_oauth_state"


def _cookie_value(response: httpx.Response, name: str) -> str:
    for header in response.headers.get_list("set-cookie"):
        key, _, rest = header.partition("=")
        if key == name:
            return rest.split(";", 1)[0]
    raise AssertionError(f"{name} cookie not set")


async def _webhook_token(client, headers) -> str:
    response = await client.get("/api/integrations/status", headers=headers)
    ingest_url = response.json()["data"]["webhook"]["ingest_url"]
    return ingest_url.removesuffix("/tasks").rsplit("/", 1)[-1]


@pytest.fixture
def limited_app(app_config, store, http_client, recording_sleep):
    """An app whose rate limits trip after two requests."""
    app_config.rate_limits = RateLimitConfig(
        webhook_max_requests=2,
        webhook_window_seconds=60,
        sync_max_requests=1,
        sync_window_seconds=60,
    )
    return create_app(app_config, store=store, http_client=http_client, sleep=recording_sleep)


@pytest.fixture
async def limited_client(limited_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=limited_app), base_url="http://test"
    ) as client:
        yield client


class TestStatus:
    async def test_disconnected_status(self, client, alice, as_user):
        response = await client.get("/api/integrations/status", headers=as_user(alice))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["google"] == {
            "connected": False,
            "external_account_email": None,
            "access_token_expires_at": None,
            "calendar_id": None,
            "last_updated_at": None,
        }
        assert data["ics"]["feed_url"].startswith(f"{APP_URL}/api/feeds/ics/")
        assert data["webhook"]["ingest_url"].startswith(f"{APP_URL}/api/integrations/webhook/")
        assert data["webhook"]["ingest_url"].endswith("/tasks")

    async def test_status_is_stable_between_calls(self, client, alice, as_user):
        first = await client.get("/api/integrations/status", headers=as_user(alice))
        second = await client.get("/api/integrations/status", headers=as_user(alice))
        assert first.json() == second.json()

    async def test_connected_status_never_exposes_tokens(
        self, client, alice, as_user, connect_google
    ):
        await connect_google(alice.id)
        response = await client.get("/api/integrations/status", headers=as_user(alice))
        google = response.json()["data"]["google"]
        assert google["connected"] is True
        assert google["external_account_email"] == "alice.work@example.com"
        assert "google-access-1" not in response.text
        assert "google-refresh-1" not in response.text


class TestRotation:
    async def test_rotate_ics_token(self, client, alice, as_user):
        before = await client.get("/api/integrations/status", headers=as_user(alice))
        response = await client.post("/api/integrations/ics/rotate", headers=as_user(alice))
        assert response.status_code == 200
        feed_url = response.json()["data"]["feed_url"]
        assert feed_url != before.json()["data"]["ics"]["feed_url"]

    async def test_rotated_webhook_token_stops_working(self, client, alice, as_user):
        old_token = await _webhook_token(client, as_user(alice))
        response = await client.post("/api/integrations/webhook/rotate", headers=as_user(alice))
        assert response.status_code == 200
        new_token = response.json()["data"]["ingest_url"].removesuffix("/tasks").rsplit("/", 1)[-1]

        stale = await client.post(
            f"/api/integrations/webhook/{old_token}/tasks", json={"title": "Stale"}
        )
        assert stale.status_code == 404
        fresh = await client.post(
            f"/api/integrations/webhook/{new_token}/tasks", json={"title": "Fresh"}
        )
        assert fresh.status_code == 201


class TestIcsFeed:
    async def test_feed_url_resolves_but_is_not_rendered(self, client, alice, as_user):
        status = await client.get("/api/integrations/status", headers=as_user(alice))
        feed_path = status.json()["data"]["ics"]["feed_url"].removeprefix(APP_URL)

        response = await client.get(feed_path)

        assert response.status_code == 501
        assert response.json()["error"]["code"] == "not_implemented"

    async def test_unknown_or_rotated_token_is_404(self, client, alice, as_user):
        before = await client.get("/api/integrations/status", headers=as_user(alice))
        old_path = before.json()["data"]["ics"]["feed_url"].removeprefix(APP_URL)
        await client.post("/api/integrations/ics/rotate", headers=as_user(alice))

        assert (await client.get(old_path)).status_code == 404
        assert (await client.get("/api/feeds/ics/nope")).status_code == 404


class TestGoogleOAuth:
    async def test_connect_redirects_and_sets_state_cookie(self, client, alice, as_user):
        response = await client.get("/api/integrations/google/connect", headers=as_user(alice))
        assert response.status_code == 302
        assert response.headers["location"].startswith(GOOGLE_OAUTH_AUTHORIZE_URL)

        cookie_header = next(
            h for h in response.headers.get_list("set-cookie") if h.startswith(STATE_COOKIE)
        )
        lowered = cookie_header.lower()
        assert "httponly" in lowered
        assert "max-age=600" in lowered
        assert "samesite=lax" in lowered
        assert "secure" in lowered
        assert _cookie_value(response, STATE_COOKIE).startswith(f"{alice.id}:")

    async def test_connect_json_mode(self, client, alice, as_user):
        response = await client.get(
            "/api/integrations/google/connect",
            params={"redirect": "false"},
            headers=as_user(alice),
        )
        assert response.status_code == 200
        url = response.json()["data"]["authorization_url"]
        state = _cookie_value(response, STATE_COOKIE)
        assert httpx.URL(url).params["state"] == state

    async def test_callback_stores_connection_and_redirects(
        self, client, alice, as_user, fake_google, store
    ):
        connect = await client.get(
            "/api/integrations/google/connect",
            params={"redirect": "false"},
            headers=as_user(alice),
        )
        state = _cookie_value(connect, STATE_COOKIE)
        fake_google.token_payload = {
            "access_token": "google-access-1",
            "refresh_token": "google-refresh-1",
            "expires_in": 3600,
        }

        response = await client.get(
            "/api/integrations/google/callback",
            params={"code": "auth-code", "state": state},
            headers={**as_user(alice), "Cookie": f"{STATE_COOKIE}={state}"},
        )

        assert response.status_code == 302
        assert response.headers["location"] == (
            f"{APP_URL}/settings/integrations?google=connected"
        )
        assert fake_google.token_forms[-1]["code"] == "auth-code"
        connection = await store.get_connection(alice.id)
        assert connection is not None
        assert connection.external_account_email == "alice.work@example.com"
        assert "google-refresh-1" not in (connection.refresh_token or "")

    async def test_callback_state_mismatch_is_400(self, client, alice, as_user, fake_google):
        connect = await client.get(
            "/api/integrations/google/connect",
            params={"redirect": "false"},
            headers=as_user(alice),
        )
        state = _cookie_value(connect, STATE_COOKIE)

        response = await client.get(
            "/api/integrations/google/callback",
            params={"code": "auth-code", "state": state + "x"},
            headers={**as_user(alice), "Cookie": f"{STATE_COOKIE}={state}"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "OAuth state mismatch"
        assert fake_google.token_forms == []

    async def test_state_issued_to_another_user_is_rejected(self, client, alice, bob, as_user):
        connect = await client.get(
            "/api/integrations/google/connect",
            params={"redirect": "false"},
            headers=as_user(alice),
        )
        state = _cookie_value(connect, STATE_COOKIE)

        response = await client.get(
            "/api/integrations/google/callback",
            params={"code": "auth-code", "state": state},
            headers={**as_user(bob), "Cookie": f"{STATE_COOKIE}={state}"},
        )
        assert response.status_code == 400

    async def test_provider_error_is_400(self, client, alice, as_user):
        response = await client.get(
            "/api/integrations/google/callback",
            params={"error": "access_denied"},
            headers=as_user(alice),
        )
        assert response.status_code == 400
        assert "access_denied" in response.json()["error"]["message"]

    async def test_disconnect(self, client, alice, as_user, connect_google):
        await connect_google(alice.id)
        response = await client.post("/api/integrations/google/disconnect", headers=as_user(alice))
        assert response.json()["data"] == {"disconnected": True}
        response = await client.post("/api/integrations/google/disconnect", headers=as_user(alice))
        assert response.json()["data"] == {"disconnected": False}


class TestGoogleSync:
    async def test_sync_without_connection_is_409(self, client, alice, as_user):
        response = await client.post("/api/integrations/google/sync", headers=as_user(alice))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "not_connected"

    async def test_sync_creates_events_for_due_tasks(
        self, client, alice, as_user, connect_google, fake_google
    ):
        await connect_google(alice.id)
        due = (datetime.now(UTC) + timedelta(days=1)).replace(microsecond=0)
        await client.post(
            "/api/tasks",
            json={"title": "Dentist", "due_date": due.isoformat()},
            headers=as_user(alice),
        )
        await client.post("/api/tasks", json={"title": "Someday"}, headers=as_user(alice))

        response = await client.post("/api/integrations/google/sync", headers=as_user(alice))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "created": 1,
            "updated": 0,
            "deleted": 0,
            "total_active": 1,
            "failed": 0,
        }
        assert [event["summary"] for event in fake_google.events.values()] == ["Dentist"]

    async def test_sync_is_rate_limited_per_user(self, limited_client, alice, as_user):
        first = await limited_client.post("/api/integrations/google/sync", headers=as_user(alice))
        assert first.status_code == 409

        second = await limited_client.post("/api/integrations/google/sync", headers=as_user(alice))
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "rate_limited"
        assert int(second.headers["Retry-After"]) > 0


class TestWebhook:
    async def test_ingest_creates_task_in_inbox(self, client, alice, as_user):
        token = await _webhook_token(client, as_user(alice))
        response = await client.post(
            f"/api/integrations/webhook/{token}/tasks",
            json={"title": "Call plumber", "priority": "HIGH"},
        )
        assert response.status_code == 201
        task = response.json()["data"]
        assert task["owner_id"] == alice.id
        assert task["priority"] == "HIGH"

        lists = await client.get("/api/lists", headers=as_user(alice))
        assert [item["name"] for item in lists.json()["data"]] == ["Inbox"]
        assert task["list_id"] == lists.json()["data"][0]["id"]

    async def test_ingest_into_named_list(self, client, alice, as_user):
        token = await _webhook_token(client, as_user(alice))
        first = await client.post(
            f"/api/integrations/webhook/{token}/tasks", json={"title": "A", "listName": "Zapier"}
        )
        second = await client.post(
            f"/api/integrations/webhook/{token}/tasks", json={"title": "B", "listName": "Zapier"}
        )
        assert first.json()["data"]["list_id"] == second.json()["data"]["list_id"]

    async def test_unknown_token_is_404(self, client):
        response = await client.post(
            "/api/integrations/webhook/not-a-token/tasks", json={"title": "x"}
        )
        assert response.status_code == 404

    async def test_invalid_json_is_400(self, client, alice, as_user):
        token = await _webhook_token(client, as_user(alice))
        response = await client.post(
            f"/api/integrations/webhook/{token}/tasks",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Request body must be valid JSON"

    async def test_invalid_body_is_400(self, client, alice, as_user):
        token = await _webhook_token(client, as_user(alice))
        response = await client.post(
            f"/api/integrations/webhook/{token}/tasks", json={"description": "no title"}
        )
        assert response.status_code == 400

    async def test_rate_limited_per_client_address(self, limited_client):
        headers = {"x-forwarded-for": "203.0.113.7"}
        for _ in range(2):
            response = await limited_client.post(
                "/api/integrations/webhook/not-a-token/tasks", json={"title": "x"}, headers=headers
            )
            assert response.status_code == 404

        response = await limited_client.post(
            "/api/integrations/webhook/not-a-token/tasks", json={"title": "x"}, headers=headers
        )
        assert response.status_code == 429
        assert "Retry-After" in response.headers

        other = await limited_client.post(
            "/api/integrations/webhook/not-a-token/tasks",
            json={"title": "x"},
            headers={"x-forwarded-for": "198.51.100.1"},
        )
        assert other.status_code == 404
