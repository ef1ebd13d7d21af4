"""Gateway layer — RPC client used to probe a running gateway."""

from dmms_gateway.gateway.rpc import (
    GatewayRpcClient,
    RpcProbeResult,
    build_probe_url,
    probe_gateway_health,
    probe_gateway_status,
)

__all__ = [
    "GatewayRpcClient",
    "RpcProbeResult",
    "build_probe_url",
    "probe_gateway_health",
    "probe_gateway_status",
]
