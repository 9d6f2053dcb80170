from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from contentsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentsync.apps.api.response import SuccessEnvelope, success_response
from contentsync.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    version: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", version=get_settings().app_version)
    return success_response(request=request, data=payload)
