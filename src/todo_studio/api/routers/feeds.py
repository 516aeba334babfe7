"""Read-only calendar feed endpoint.

``GET /api/feeds/ics/{token}`` is the URL advertised in the integration
status.  Unknown or rotated tokens answer 404; valid tokens answer 501
because VCALENDAR rendering is not served by this API.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from todo_studio.api.deps import Services, get_services

router = APIRouter(prefix="/api/feeds", tags=["feeds"])


@router.get("/ics/{token}")
async def ics_feed(
    token: str,
    services: Services = Depends(get_services),
) -> Response:
    body = await services.integrations.ics_feed(token)
    return Response(content=body, media_type="text/calendar")
