"""DMMS AI Gateway — Exception hierarchy.

All exceptions raised by the control plane inherit from DmmsGatewayError so
that callers can catch the full family with a single except clause when
needed.

Hierarchy:
    DmmsGatewayError
    ├── ServiceError
    │   ├── PermissionDeniedError
    │   ├── UnsupportedPlatformError
    │   ├── ServiceCommandError
    │   │   └── CommandTimeoutError
    │   ├── ServiceNotInstalledError
    │   ├── ServiceBusyError
    │   └── ServiceDefinitionParseError
    ├── ProbeError
    │   └── ProbeTimeoutError
    ├── TrustError
    │   ├── UntrustedEndpointError
    │   │   └── FingerprintMismatchError
    │   └── PairingRejectedError
    └── GatewayRpcError
"""

from __future__ import annotations

from typing import Any


class DmmsGatewayError(Exception):
    """Base exception for all DMMS AI Gateway errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Service management layer
# ---------------------------------------------------------------------------


class ServiceError(DmmsGatewayError):
    """Base for all OS service-manager errors."""


class PermissionDeniedError(ServiceError):
    """The OS service manager refused the operation.

    Surfaced to the operator as-is; never retried automatically.
    """

    def __init__(self, operation: str, service: str, detail: str = "") -> None:
        message = f"Permission denied: {operation} on service '{service}'"
        if detail:
            message += f": {detail}"
        super().__init__(
            message,
            context={"operation": operation, "service": service, "detail": detail},
        )
        self.operation = operation
        self.service = service
        self.detail = detail


class UnsupportedPlatformError(ServiceError):
    """No service adapter exists for the current operating system."""

    def __init__(self, platform: str) -> None:
        super().__init__(
            f"Gateway service management is not supported on platform '{platform}'",
            context={"platform": platform},
        )
        self.platform = platform


class ServiceCommandError(ServiceError):
    """A service-manager command exited with a non-zero status."""

    def __init__(
        self,
        command: str,
        detail: str,
        returncode: int | None = None,
    ) -> None:
        super().__init__(
            f"{command} failed: {detail}" if detail else f"{command} failed",
            context={"command": command, "detail": detail, "returncode": returncode},
        )
        self.command = command
        self.detail = detail
        self.returncode = returncode


class CommandTimeoutError(ServiceCommandError):
    """A service-manager command did not finish within its time budget."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(command, f"timed out after {timeout:g}s")
        self.context["timeout"] = timeout
        self.timeout = timeout


class ServiceNotInstalledError(ServiceError):
    """A lifecycle operation needs an installed service but none exists."""

    def __init__(self, operation: str, service: str) -> None:
        super().__init__(
            f"Cannot {operation}: service '{service}' is not installed",
            context={"operation": operation, "service": service},
        )
        self.operation = operation
        self.service = service


class ServiceBusyError(ServiceError):
    """Another lifecycle operation on the same service holds its lock."""

    def __init__(self, service: str, lock_path: str, timeout: float) -> None:
        super().__init__(
            f"Service '{service}' is busy: another operation held {lock_path} for {timeout:g}s",
            context={"service": service, "lock_path": lock_path, "timeout": timeout},
        )
        self.service = service
        self.lock_path = lock_path
        self.timeout = timeout


class ServiceDefinitionParseError(ServiceError):
    """A persisted service file exists but could not be parsed.

    Callers treat this as "definition absent": the gateway may still be
    reachable even when its service file is damaged.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Cannot parse service definition '{path}': {reason}",
            context={"path": path, "reason": reason},
        )
        self.path = path
        self.reason = reason


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class ProbeError(DmmsGatewayError):
    """Base for port and RPC probe failures."""


class ProbeTimeoutError(ProbeError):
    """A probe exceeded its bound.

    Distinct from "port free" and "service down": the probe simply has no
    answer.
    """

    def __init__(self, probe: str, target: str, timeout: float) -> None:
        super().__init__(
            f"{probe} probe of {target} timed out after {timeout:g}s",
            context={"probe": probe, "target": target, "timeout": timeout},
        )
        self.probe = probe
        self.target = target
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Endpoint trust
# ---------------------------------------------------------------------------


class TrustError(DmmsGatewayError):
    """Base for endpoint trust errors."""


class UntrustedEndpointError(TrustError):
    """TLS is required but no verified fingerprint exists for the endpoint.

    The connection attempt must halt until an explicit pairing step has
    pinned a fingerprint.
    """

    def __init__(self, stable_id: str, reason: str = "no verified fingerprint pinned") -> None:
        super().__init__(
            f"Endpoint '{stable_id}' is not trusted: {reason}",
            context={"stable_id": stable_id, "reason": reason},
        )
        self.stable_id = stable_id
        self.reason = reason


class FingerprintMismatchError(UntrustedEndpointError):
    """The certificate presented by the endpoint does not match the pin."""

    def __init__(self, stable_id: str, expected: str, presented: str) -> None:
        super().__init__(stable_id, reason="presented certificate does not match pinned fingerprint")
        self.context.update({"expected": expected, "presented": presented})
        self.expected = expected
        self.presented = presented


class PairingRejectedError(TrustError):
    """The operator declined to confirm a presented fingerprint."""

    def __init__(self, stable_id: str) -> None:
        super().__init__(
            f"Pairing with '{stable_id}' was not confirmed",
            context={"stable_id": stable_id},
        )
        self.stable_id = stable_id


# ---------------------------------------------------------------------------
# Gateway RPC
# ---------------------------------------------------------------------------


class GatewayRpcError(DmmsGatewayError):
    """The gateway answered an RPC call with an error, or the call failed."""

    def __init__(self, method: str, url: str, detail: str, code: str | None = None) -> None:
        super().__init__(
            f"Gateway RPC '{method}' at {url} failed: {detail}",
            context={"method": method, "url": url, "detail": detail, "code": code},
        )
        self.method = method
        self.url = url
        self.detail = detail
        self.code = code
