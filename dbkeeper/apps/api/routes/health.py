from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from dbkeeper.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=HealthResponse)
@router.get("/v1/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok").model_dump()
    return success_response(request=request, data=payload)
