"""JSON-RPC bridge to a long-running container.

Only the protocol, client and server are imported here; the server runs
inside containers that have nothing but aiohttp and structlog installed.
Import :mod:`runbox.bridge.lifecycle` directly for the host-side manager.
"""

from __future__ import annotations

from runbox.bridge.client import (
    BridgeClient,
    BridgeError,
    BridgeRpcError,
    BridgeTimeoutError,
    wait_until_connected,
)
from runbox.bridge.server import BridgeServer, create_app

__all__ = [
    "BridgeClient",
    "BridgeError",
    "BridgeRpcError",
    "BridgeServer",
    "BridgeTimeoutError",
    "create_app",
    "wait_until_connected",
]
