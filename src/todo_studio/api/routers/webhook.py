"""Inbound webhook endpoint.

``POST /api/integrations/webhook/{token}/tasks`` creates a task for the
user owning *token*.  No session is required; requests are rate limited per
client address.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from todo_studio.api.deps import Services, get_services
from todo_studio.api.models import ApiResponse, TaskResponse
from todo_studio.errors import ValidationError
from todo_studio.rate_limit import client_ip_from_headers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations/webhook", tags=["webhook"])


@router.post("/{token}/tasks", response_model=ApiResponse[TaskResponse], status_code=201)
async def ingest_task(
    token: str,
    request: Request,
    services: Services = Depends(get_services),
) -> ApiResponse[TaskResponse]:
    client_ip = client_ip_from_headers(
        request.headers,
        request.client.host if request.client else None,
    )
    limits = services.config.rate_limits
    await services.rate_limiter.enforce(
        f"webhook:{client_ip}",
        limits.webhook_max_requests,
        limits.webhook_window_seconds,
    )

    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc

    task = await services.webhook.ingest_task(token, body)
    return ApiResponse[TaskResponse](data=TaskResponse.from_task(task))
