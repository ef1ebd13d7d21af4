"""Gateway layer — RPC health client.

Frame protocol over one WebSocket connection::

    → {"type": "req", "id": "<uuid>", "method": "status", "params": {}}
    ← {"type": "res", "id": "<uuid>", "ok": true,  "payload": {...}}
    ← {"type": "res", "id": "<uuid>", "ok": false, "error": {"code": "...", "message": "..."}}

Frames that are not the response to our request (events, other ids,
garbage) are skipped.  The whole exchange, handshake included, runs under
a single time budget.

``probe_gateway_status`` wraps a ``status`` call for diagnostics and never
raises: every failure becomes a field of ``RpcProbeResult``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from dmms_gateway.exceptions import GatewayRpcError, ProbeTimeoutError
from dmms_gateway.logging import get_logger

log = get_logger(__name__)

DEFAULT_RPC_TIMEOUT_S = 5.0
LOOPBACK_HOST = "127.0.0.1"


def build_probe_url(port: int, tls_enabled: bool = False, host: str = LOOPBACK_HOST) -> str:
    scheme = "wss" if tls_enabled else "ws"
    return f"{scheme}://{host}:{port}"


def _health_url(url: str) -> str:
    if url.startswith("wss://"):
        base = "https://" + url[len("wss://") :]
    elif url.startswith("ws://"):
        base = "http://" + url[len("ws://") :]
    else:
        base = url
    return base.rstrip("/") + "/health"


@dataclass(frozen=True)
class RpcProbeResult:
    ok: bool
    url: str
    latency_ms: float | None = None
    error: str | None = None
    timed_out: bool = False
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "url": self.url,
            "latencyMs": self.latency_ms,
            "error": self.error,
            "timedOut": self.timed_out,
            "payload": self.payload,
        }


class GatewayRpcClient:
    """Single-request RPC client: one connection per call."""

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT_S,
        token: str | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._token = (token or "").strip() or None

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send one request and return its payload.

        Raises:
            ProbeTimeoutError: No matching response within ``timeout``.
            GatewayRpcError: Connection failure or an ``ok=false`` response.
        """
        try:
            return await asyncio.wait_for(self._exchange(method, params or {}), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProbeTimeoutError("rpc", self.url, self.timeout) from None
        except (OSError, WebSocketException) as exc:
            raise GatewayRpcError(method, self.url, str(exc) or type(exc).__name__) from exc

    async def _exchange(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        request_id = str(uuid.uuid4())
        async with connect(
            self.url,
            additional_headers=headers,
            open_timeout=None,
            close_timeout=1,
        ) as ws:
            await ws.send(
                json.dumps({"type": "req", "id": request_id, "method": method, "params": params})
            )
            while True:
                raw = await ws.recv()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("type") != "res" or frame.get("id") != request_id:
                    continue
                if frame.get("ok"):
                    payload = frame.get("payload")
                    return payload if isinstance(payload, dict) else {}
                error = frame.get("error") if isinstance(frame.get("error"), dict) else {}
                raise GatewayRpcError(
                    method,
                    self.url,
                    str(error.get("message") or "request failed"),
                    code=error.get("code"),
                )

    async def status(self) -> dict[str, Any]:
        return await self.call("status")


async def probe_gateway_status(
    url: str,
    timeout: float = DEFAULT_RPC_TIMEOUT_S,
    token: str | None = None,
) -> RpcProbeResult:
    client = GatewayRpcClient(url, timeout=timeout, token=token)
    started = time.perf_counter()
    try:
        payload = await client.status()
    except ProbeTimeoutError as exc:
        log.debug("rpc_probe_timeout", url=url, timeout=timeout)
        return RpcProbeResult(ok=False, url=url, error=exc.message, timed_out=True)
    except GatewayRpcError as exc:
        log.debug("rpc_probe_failed", url=url, error=exc.detail)
        return RpcProbeResult(ok=False, url=url, error=exc.detail)
    latency_ms = round((time.perf_counter() - started) * 1000, 1)
    return RpcProbeResult(ok=True, url=url, latency_ms=latency_ms, payload=payload)


async def probe_gateway_health(
    url: str,
    timeout: float = DEFAULT_RPC_TIMEOUT_S,
    token: str | None = None,
) -> RpcProbeResult:
    """Plain-HTTP ``GET /health`` probe; same result shape as the RPC probe."""
    health_url = _health_url(url)
    headers = {"Authorization": f"Bearer {token.strip()}"} if token and token.strip() else {}
    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(health_url, headers=headers)
    except httpx.TimeoutException:
        return RpcProbeResult(ok=False, url=health_url, error=f"timed out after {timeout:g}s", timed_out=True)
    except httpx.HTTPError as exc:
        return RpcProbeResult(ok=False, url=health_url, error=str(exc) or type(exc).__name__)
    latency_ms = round((time.perf_counter() - started) * 1000, 1)
    if response.status_code != 200:
        return RpcProbeResult(
            ok=False,
            url=health_url,
            latency_ms=latency_ms,
            error=f"HTTP {response.status_code}",
        )
    try:
        payload = response.json()
    except ValueError:
        payload = None
    return RpcProbeResult(
        ok=True,
        url=health_url,
        latency_ms=latency_ms,
        payload=payload if isinstance(payload, dict) else None,
    )
