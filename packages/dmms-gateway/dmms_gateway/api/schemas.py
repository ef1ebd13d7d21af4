"""API layer — Request and response schemas.

These are the external wire contracts of the gateway process: the RPC
frames exchanged over the WebSocket at ``/`` and the ``GET /health`` body.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# RPC frames
# ---------------------------------------------------------------------------


class RpcRequest(BaseModel):
    """Client → gateway request frame."""

    type: Literal["req"]
    id: str = Field(min_length=1)
    method: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class RpcError(BaseModel):
    code: str
    message: str


class RpcResponse(BaseModel):
    """Gateway → client response frame.

    Exactly one of ``payload`` (``ok=True``) or ``error`` (``ok=False``)
    is set.
    """

    type: Literal["res"] = "res"
    id: str | None
    ok: bool
    payload: dict[str, Any] | None = None
    error: RpcError | None = None

    @classmethod
    def success(cls, request_id: str, payload: dict[str, Any]) -> "RpcResponse":
        return cls(id=request_id, ok=True, payload=payload)

    @classmethod
    def failure(cls, request_id: str | None, code: str, message: str) -> "RpcResponse":
        return cls(id=request_id, ok=False, error=RpcError(code=code, message=message))

    def to_frame(self) -> str:
        return self.model_dump_json(exclude_none=True)


class StatusPayload(BaseModel):
    """Payload of the ``status`` method."""

    status: str = "ok"
    version: str
    pid: int
    uptime_seconds: float
    port: int | None = None
    bind: str
    profile: str | None = None
    state_dir: str
    config_path: str


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    uptime_seconds: float


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: dict[str, Any] | None = None
    request_id: str | None = None
