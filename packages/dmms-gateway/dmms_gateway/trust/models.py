"""Trust layer — Endpoint descriptors, trust decisions and pin records.

  - ``GatewayEndpoint`` — a candidate gateway, as discovered or entered by hand
  - ``TrustDecision``   — whether/how TLS must be validated for that endpoint
  - ``PinRecord``       — a fingerprint an operator verified during pairing

Discovery metadata (``tls_enabled``, ``tls_fingerprint_sha256``) is an
unauthenticated hint.  It can make TLS *required*, but it can never supply
the fingerprint that TLS is validated against.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

MANUAL_ENDPOINT_PREFIX = "manual|"


@dataclass(frozen=True)
class GatewayEndpoint:
    """A candidate gateway endpoint."""

    stable_id: str
    tls_enabled: bool = False
    tls_fingerprint_sha256: str | None = None  # advertised hint, never trusted
    host: str | None = None
    port: int | None = None

    @property
    def is_manual(self) -> bool:
        return self.stable_id.startswith(MANUAL_ENDPOINT_PREFIX)

    @classmethod
    def manual(cls, host: str, port: int, tls_enabled: bool = False) -> "GatewayEndpoint":
        return cls(
            stable_id=f"{MANUAL_ENDPOINT_PREFIX}{host}|{port}",
            tls_enabled=tls_enabled,
            host=host,
            port=port,
        )


@dataclass(frozen=True)
class TrustDecision:
    """Parameters for the TLS handshake with one endpoint.

    ``expected_fingerprint`` is None when TLS is required but nothing has
    been pinned yet; the connection layer must then halt for pairing.
    Trust-on-first-use is never permitted.
    """

    required: bool
    expected_fingerprint: str | None = None
    allow_tofu: bool = False
    stable_id: str = ""

    def __post_init__(self) -> None:
        if self.allow_tofu:
            raise ValueError("trust-on-first-use is not permitted")

    def to_dict(self) -> dict[str, Any]:
        return {
            "required": self.required,
            "expectedFingerprint": self.expected_fingerprint,
            "allowTOFU": self.allow_tofu,
            "stableId": self.stable_id,
        }


@dataclass(frozen=True)
class PinRecord:
    """Immutable record of an operator-verified certificate fingerprint."""

    stable_id: str
    fingerprint: str
    paired_at: float = field(default_factory=time.time)
    verified_by: str = "user"

    def to_dict(self) -> dict[str, Any]:
        return {
            "stable_id": self.stable_id,
            "fingerprint": self.fingerprint,
            "paired_at": self.paired_at,
            "verified_by": self.verified_by,
        }
