"""Shared fixtures for the Todo Studio test suite.

Persistence uses :class:`InMemoryStore`; Google is replaced by
:class:`FakeGoogle`, an in-process fake served through
``httpx.MockTransport`` so no test touches the network.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from todo_studio.activity import ActivityRecorder
from todo_studio.config import AppConfig, GoogleConfig
from todo_studio.integrations.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    GoogleCalendarClient,
    GoogleOAuthClient,
    GoogleTokenResponse,
)
from todo_studio.integrations.sync import CalendarSyncEngine
from todo_studio.integrations.tokens import TokenManager
from todo_studio.models import User
from todo_studio.sealing import SecretSealer
from todo_studio.services.lists import ListService
from todo_studio.services.tasks import TaskService
from todo_studio.storage.memory import InMemoryStore

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
BASE_URL = "https://todo.example.com"

_CALENDAR_PATH_PREFIX = httpx.URL(GOOGLE_CALENDAR_API_BASE_URL).path


class FakeGoogle:
    """Just enough of Google OAuth + Calendar v3 for the sync engine.

    Failure knobs:

    - ``token_status``: non-200 makes the token endpoint fail.
    - ``fail_create_titles``: event summaries whose creation returns 500.
    - ``fail_delete``: event ids whose deletion returns 500.
    - ``rate_limited_responses``: the next N calendar calls answer 429.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []
        self.token_status = 200
        self.token_payload: dict[str, Any] = {
            "access_token": "google-access-2",
            "expires_in": 3600,
        }
        self.account_email = "alice.work@example.com"
        self.calendars: list[dict[str, Any]] = []
        self.events: dict[str, dict[str, Any]] = {}
        self.fail_create_titles: set[str] = set()
        self.fail_delete: set[str] = set()
        self.rate_limited_responses = 0
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def calls(self, method: str, fragment: str = "") -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]

        if url == GOOGLE_OAUTH_TOKEN_URL:
            self.token_forms.append(dict(parse_qsl(request.content.decode())))
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={
                        "error": "invalid_grant",
                        "error_description": "Token has been revoked.",
                    },
                )
            return httpx.Response(200, json=self.token_payload)

        if url == GOOGLE_USERINFO_URL:
            return httpx.Response(200, json={"email": self.account_email})

        if self.rate_limited_responses > 0:
            self.rate_limited_responses -= 1
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"error": "slow down"})

        path = request.url.path.removeprefix(_CALENDAR_PATH_PREFIX)
        parts = [part for part in path.split("/") if part]

        if request.method == "GET" and parts == ["users", "me", "calendarList"]:
            return httpx.Response(200, json={"items": self.calendars})

        if request.method == "POST" and parts == ["calendars"]:
            body = json.loads(request.content)
            calendar = {"id": self._next_id("cal"), "summary": body["summary"]}
            self.calendars.append(calendar)
            return httpx.Response(200, json=calendar)

        if len(parts) >= 3 and parts[0] == "calendars" and parts[2] == "events":
            return self._handle_event(request, parts[3] if len(parts) > 3 else None)

        message = f"Unhandled {request.method} {path}"
        return httpx.Response(404, json={"error": {"message": message}})

    def _handle_event(self, request: httpx.Request, event_id: str | None) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            if body["summary"] in self.fail_create_titles:
                return httpx.Response(500, json={"error": {"message": "Backend Error"}})
            event_id = self._next_id("evt")
            self.events[event_id] = body
            return httpx.Response(200, json={"id": event_id, "summary": body["summary"]})

        if request.method == "PATCH":
            if event_id not in self.events:
                return httpx.Response(404, json={"error": {"message": "Not Found"}})
            self.events[event_id].update(json.loads(request.content))
            summary = self.events[event_id]["summary"]
            return httpx.Response(200, json={"id": event_id, "summary": summary})

        if request.method == "DELETE":
            if event_id in self.fail_delete:
                return httpx.Response(500, json={"error": {"message": "Backend Error"}})
            if self.events.pop(event_id, None) is None:
                return httpx.Response(410, json={"error": {"message": "Resource deleted"}})
            return httpx.Response(204)

        return httpx.Response(405)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def due_in(hours: int) -> datetime:
    return (datetime.now(UTC) + timedelta(hours=hours)).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
async def alice(store: InMemoryStore) -> User:
    return await store.create_user(
        User(id="user-alice", email="alice@example.com", username="alice", display_name="Alice")
    )


@pytest.fixture
async def bob(store: InMemoryStore) -> User:
    return await store.create_user(
        User(id="user-bob", email="bob@example.com", username="bob", display_name="Bob")
    )


@pytest.fixture
async def carol(store: InMemoryStore) -> User:
    return await store.create_user(
        User(id="user-carol", email="carol@example.com", username="carol", display_name=None)
    )


@pytest.fixture
def sealer() -> SecretSealer:
    return SecretSealer.from_raw_key(TEST_KEY_HEX)


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
async def http_client(fake_google: FakeGoogle):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler)) as client:
        yield client


@pytest.fixture
def google_config() -> GoogleConfig:
    return GoogleConfig(client_id="client-id-123", client_secret="client-secret-xyz")


@pytest.fixture
def app_config(google_config: GoogleConfig) -> AppConfig:
    return AppConfig(base_url=BASE_URL, google=google_config, encryption_key=TEST_KEY_HEX)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def oauth_client(google_config: GoogleConfig, http_client: httpx.AsyncClient) -> GoogleOAuthClient:
    return GoogleOAuthClient(google_config, http_client, base_url=BASE_URL)


@pytest.fixture
def calendar_client(
    http_client: httpx.AsyncClient, recording_sleep: RecordingSleep
) -> GoogleCalendarClient:
    return GoogleCalendarClient(http_client, sleep=recording_sleep)


@pytest.fixture
def token_manager(
    store: InMemoryStore, sealer: SecretSealer, oauth_client: GoogleOAuthClient
) -> TokenManager:
    return TokenManager(store, sealer, oauth_client)


@pytest.fixture
def sync_engine(
    store: InMemoryStore,
    token_manager: TokenManager,
    calendar_client: GoogleCalendarClient,
) -> CalendarSyncEngine:
    return CalendarSyncEngine(store, token_manager, calendar_client, base_url=BASE_URL)


@pytest.fixture
def activity(store: InMemoryStore) -> ActivityRecorder:
    return ActivityRecorder(store)


@pytest.fixture
def task_service(store: InMemoryStore, activity: ActivityRecorder) -> TaskService:
    return TaskService(store, activity)


@pytest.fixture
def list_service(store: InMemoryStore) -> ListService:
    return ListService(store)


@pytest.fixture
def connect_google(store: InMemoryStore, token_manager: TokenManager):
    """Store a fresh Google connection for a user, as the OAuth callback would."""

    async def _connect(
        user_id: str,
        *,
        refresh_token: str | None = "google-refresh-1",
        calendar_id: str | None = None,
    ):
        connection = await token_manager.store_oauth_tokens(
            user_id,
            GoogleTokenResponse(
                access_token="google-access-1",
                refresh_token=refresh_token,
                expires_in=3600,
            ),
            external_account_email="alice.work@example.com",
        )
        if calendar_id is not None:
            await store.set_connection_calendar_id(connection.id, calendar_id)
        return await store.get_connection(user_id)

    return _connect
