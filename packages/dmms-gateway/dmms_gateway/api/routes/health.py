"""GET /health — liveness check used by the HTTP fallback probe."""

from __future__ import annotations

from fastapi import APIRouter, Request

from dmms_gateway.api.dependencies import AuthDep
from dmms_gateway.api.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse, summary="Gateway health check")
async def health(request: Request, _auth: AuthDep) -> HealthResponse:
    runtime = request.app.state.runtime
    return HealthResponse(
        status="ok",
        version=runtime.version,
        uptime_seconds=runtime.uptime_seconds(),
    )
