from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ncrelay.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from ncrelay.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


# Liveness only; queue state lives under /v1/admin/queue/health.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())
