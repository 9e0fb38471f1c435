"""Environment-driven defaults.

Every knob can be overridden per process through the environment; library
callers can also pass explicit values, which always win.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [{"urls": "stun:stun.l.google.com:19302"}]

# ------------------------------------------------------------------------------
# Ledger relay
# ------------------------------------------------------------------------------
RPC_URL = os.getenv("RPC_URL", "http://localhost:8545")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
RELAY_POLL_INTERVAL_S = float(os.getenv("RELAY_POLL_INTERVAL_S", "2.0"))
RELAY_RECEIPT_TIMEOUT_S = float(os.getenv("RELAY_RECEIPT_TIMEOUT_S", "120"))

# ------------------------------------------------------------------------------
# Development relay server / client
# ------------------------------------------------------------------------------
RELAY_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.getenv("RELAY_PORT", "9100"))
RELAY_URL = os.getenv("RELAY_URL", f"ws://127.0.0.1:{RELAY_PORT}")
PROXY = os.getenv("PROXY")
UVLOOP = bool(os.getenv("UVLOOP"))

# ------------------------------------------------------------------------------
# Negotiation
# ------------------------------------------------------------------------------
SIGNAL_TIMEOUT_S = float(os.getenv("SIGNAL_TIMEOUT_S", "20"))


def load_ice_servers(raw: Optional[str] = None) -> List[Dict[str, Any]]:
    """Parse an ``ICE_SERVERS`` JSON list, falling back to public STUN."""

    raw = os.getenv("ICE_SERVERS") if raw is None else raw
    if not raw:
        return [dict(s) for s in DEFAULT_ICE_SERVERS]
    try:
        servers = json.loads(raw)
    except ValueError as exc:
        raise ValueError("ICE_SERVERS must be a JSON list") from exc
    if not isinstance(servers, list) or not all(
        isinstance(s, dict) and "urls" in s for s in servers
    ):
        raise ValueError("ICE_SERVERS entries must be objects with a 'urls' field")
    return servers


@dataclass
class SessionConfig:
    """Per-session negotiation settings."""

    timeout_s: float = SIGNAL_TIMEOUT_S
    ice_servers: List[Dict[str, Any]] = field(default_factory=load_ice_servers)
    channel_label: str = "chat"

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be positive")

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            timeout_s=float(os.getenv("SIGNAL_TIMEOUT_S", str(SIGNAL_TIMEOUT_S))),
            ice_servers=load_ice_servers(),
        )


__all__ = [
    "DEFAULT_ICE_SERVERS",
    "RPC_URL",
    "CONTRACT_ADDRESS",
    "RELAY_POLL_INTERVAL_S",
    "RELAY_RECEIPT_TIMEOUT_S",
    "RELAY_HOST",
    "RELAY_PORT",
    "RELAY_URL",
    "PROXY",
    "UVLOOP",
    "SIGNAL_TIMEOUT_S",
    "load_ice_servers",
    "SessionConfig",
]
