"""WS / — Gateway RPC endpoint.

One request frame in, one response frame out, for as long as the client
keeps the socket open.  Only ``status`` is served here; every other
method answers ``ok=false`` with ``error.code="unknown_method"``.

When a token is configured, the handshake must carry
``Authorization: Bearer <token>`` or the socket is closed with 1008
(policy violation) before it is accepted.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from dmms_gateway.api.dependencies import bearer_token, build_status_payload, expected_token, token_matches
from dmms_gateway.api.schemas import RpcRequest, RpcResponse
from dmms_gateway.logging import get_logger

log = get_logger(__name__)
router = APIRouter(tags=["rpc"])

RpcHandler = Callable[[WebSocket, dict[str, Any]], Awaitable[dict[str, Any]]]


async def _status(websocket: WebSocket, params: dict[str, Any]) -> dict[str, Any]:
    return build_status_payload(websocket).model_dump()


METHODS: dict[str, RpcHandler] = {
    "status": _status,
}


async def handle_frame(websocket: WebSocket, raw: str) -> RpcResponse:
    try:
        data = json.loads(raw)
    except ValueError:
        return RpcResponse.failure(None, "invalid_request", "frame is not valid JSON")
    try:
        request = RpcRequest.model_validate(data)
    except ValidationError as exc:
        request_id = data.get("id") if isinstance(data, dict) and isinstance(data.get("id"), str) else None
        return RpcResponse.failure(request_id, "invalid_request", f"{exc.error_count()} invalid field(s)")

    handler = METHODS.get(request.method)
    if handler is None:
        return RpcResponse.failure(request.id, "unknown_method", f"unknown method: {request.method}")
    payload = await handler(websocket, request.params)
    return RpcResponse.success(request.id, payload)


@router.websocket("/")
async def rpc(websocket: WebSocket) -> None:
    presented = bearer_token(websocket.headers.get("authorization"))
    if not token_matches(expected_token(websocket), presented):
        log.warning("rpc_unauthorized", client=websocket.client.host if websocket.client else None)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    log.debug("rpc_connected")
    try:
        while True:
            raw = await websocket.receive_text()
            response = await handle_frame(websocket, raw)
            await websocket.send_text(response.to_frame())
    except WebSocketDisconnect:
        log.debug("rpc_disconnected")
