"""DMMS AI Gateway — Control plane for the personal-automation gateway daemon.

Decides whether a client may trust a gateway endpoint before sending
credentials to it, and installs, tracks and diagnoses the gateway as a
native background service under launchd, systemd user units or Windows
Scheduled Tasks.

Architecture layers (bottom to top):
    1. Paths/Config — profile-aware state dir, config file and port resolution
    2. Trust        — TLS parameter resolver, certificate pin store, pairing gate
    3. Daemon       — one service adapter per OS, lifecycle controller
    4. Diagnostics  — port probe, RPC probe, config drift, extra-service scan
    5. Gateway/API  — RPC health client, FastAPI gateway process
    6. CLI          — ``dmms-ai`` (typer + rich)
"""

__version__ = "0.1.0"
__author__ = "DMMS AI Contributors"

__all__ = [
    "__version__",
]
