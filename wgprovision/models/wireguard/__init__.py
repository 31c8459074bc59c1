"""
WireGuard models and schemas

Pydantic records for networks, peers and provisioning results.
"""

from .provisioning import (
    KeyPair,
    Network,
    Peer,
    PeerStatus,
    PoolStats,
    ProvisionResult,
    RenderedConfig,
)

__all__ = [
    "KeyPair",
    "Network",
    "Peer",
    "PeerStatus",
    "PoolStats",
    "ProvisionResult",
    "RenderedConfig",
]
