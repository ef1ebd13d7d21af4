"""Daemon layer — OS service adapters, lifecycle controller, service definitions."""

from dmms_gateway.daemon.base import ServiceAdapter
from dmms_gateway.daemon.launchd import LaunchdServiceAdapter
from dmms_gateway.daemon.lifecycle import LifecycleController, ServiceSnapshot
from dmms_gateway.daemon.models import (
    GatewayInvocation,
    LifecycleResult,
    RuntimeStatus,
    ServiceDefinition,
    ServiceRuntimeStatus,
    ServiceState,
)
from dmms_gateway.daemon.platform import adapter_class_for, select_service_adapter
from dmms_gateway.daemon.program_args import build_service_definition
from dmms_gateway.daemon.schtasks import SchtasksServiceAdapter
from dmms_gateway.daemon.systemd import SystemdServiceAdapter

__all__ = [
    "GatewayInvocation",
    "LaunchdServiceAdapter",
    "LifecycleController",
    "LifecycleResult",
    "RuntimeStatus",
    "SchtasksServiceAdapter",
    "ServiceAdapter",
    "ServiceDefinition",
    "ServiceRuntimeStatus",
    "ServiceSnapshot",
    "ServiceState",
    "SystemdServiceAdapter",
    "adapter_class_for",
    "build_service_definition",
    "select_service_adapter",
]
