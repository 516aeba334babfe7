"""Integration settings endpoints.

Mounted at ``/api/integrations``:

- ``GET  /status``: Google connection state plus feed and webhook URLs.
- ``GET  /google/connect``: start the OAuth flow.  The state nonce is bound
  to the caller and kept in a short-lived HttpOnly cookie.
- ``GET  /google/callback``: validate state, exchange the code, store the
  sealed tokens and redirect back to the settings page.
- ``POST /google/disconnect``: delete the connection and its mappings.
- ``POST /google/sync``: run one reconciliation pass (rate limited per user).
- ``POST /ics/rotate`` / ``POST /webhook/rotate``: replace one token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Cookie, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from todo_studio.api.deps import Services, get_current_user, get_services
from todo_studio.api.models import (
    ApiResponse,
    ConnectResponse,
    FeedStatus,
    IntegrationStatusResponse,
    SyncResponse,
    WebhookStatus,
)
from todo_studio.models import User
from todo_studio.services.integrations import OAUTH_STATE_COOKIE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

OAUTH_STATE_MAX_AGE_SECONDS = 600
SETTINGS_PATH = "/settings/integrations"


@router.get("/status", response_model=ApiResponse[IntegrationStatusResponse])
async def integration_status(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[IntegrationStatusResponse]:
    """Read-only integration state.  Stored tokens are never returned."""
    status = await services.integrations.status(user.id)
    return ApiResponse[IntegrationStatusResponse](
        data=IntegrationStatusResponse.model_validate(status)
    )


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


@router.get(
    "/google/connect",
    responses={
        200: {"model": ConnectResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to Google authorization URL"},
    },
)
async def google_connect(
    redirect: bool = Query(
        default=True,
        description="If false, return the authorization URL as JSON instead of redirecting.",
    ),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Response:
    auth_url, state = services.integrations.begin_google_connect(user.id)
    logger.info("Google OAuth flow started: user_id=%s", user.id)

    response: Response
    if redirect:
        response = RedirectResponse(url=auth_url, status_code=302)
    else:
        response = JSONResponse(
            content=ApiResponse[ConnectResponse](
                data=ConnectResponse(authorization_url=auth_url)
            ).model_dump()
        )
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=OAUTH_STATE_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=services.config.base_url.startswith("https://"),
        path="/",
    )
    return response


@router.get("/google/callback")
async def google_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    cookie_state: str | None = Cookie(default=None, alias=OAUTH_STATE_COOKIE),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Response:
    """Finish the OAuth flow and redirect to the settings page.

    A state mismatch or a provider failure answers with the standard error
    envelope instead of redirecting.
    """
    await services.integrations.complete_google_connect(
        user.id,
        code=code,
        state=state,
        cookie_state=cookie_state,
        error=error,
    )
    response = RedirectResponse(
        url=f"{services.config.base_url}{SETTINGS_PATH}?google=connected",
        status_code=302,
    )
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/")
    return response


@router.post("/google/disconnect", response_model=ApiResponse[dict])
async def google_disconnect(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[dict]:
    disconnected = await services.integrations.disconnect_google(user.id)
    return ApiResponse[dict](data={"disconnected": disconnected})


@router.post("/google/sync", response_model=ApiResponse[SyncResponse])
async def google_sync(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[SyncResponse]:
    """Reconcile the caller's due, incomplete tasks with Google Calendar."""
    result = await services.integrations.sync_google(user.id)
    return ApiResponse[SyncResponse](data=SyncResponse(**result.as_dict()))


# ---------------------------------------------------------------------------
# Token rotation
# ---------------------------------------------------------------------------


@router.post("/ics/rotate", response_model=ApiResponse[FeedStatus])
async def rotate_ics_token(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[FeedStatus]:
    feed_url = await services.integrations.rotate_ics_token(user.id)
    return ApiResponse[FeedStatus](data=FeedStatus(feed_url=feed_url))


@router.post("/webhook/rotate", response_model=ApiResponse[WebhookStatus])
async def rotate_webhook_token(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[WebhookStatus]:
    ingest_url = await services.integrations.rotate_webhook_token(user.id)
    return ApiResponse[WebhookStatus](data=WebhookStatus(ingest_url=ingest_url))
