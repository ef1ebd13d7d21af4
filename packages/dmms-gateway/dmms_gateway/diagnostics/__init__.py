"""Diagnostics layer — Service/port/RPC cross-checks, config drift, extra-service scan."""

from dmms_gateway.diagnostics.engine import (
    ConfigDrift,
    DiagnosticsEngine,
    DiagnosticsReport,
    DriftField,
    detect_config_drift,
)
from dmms_gateway.diagnostics.inspect import ExtraGatewayService, find_extra_gateway_services
from dmms_gateway.diagnostics.ports import (
    PortListener,
    PortStatus,
    PortUsageReport,
    inspect_port_usage,
    parse_lsof_listeners,
)

__all__ = [
    "ConfigDrift",
    "DiagnosticsEngine",
    "DiagnosticsReport",
    "DriftField",
    "ExtraGatewayService",
    "PortListener",
    "PortStatus",
    "PortUsageReport",
    "detect_config_drift",
    "find_extra_gateway_services",
    "inspect_port_usage",
    "parse_lsof_listeners",
]
