"""
WireGuard peer provisioning engine

Creates peer identities, assigns addresses from a network range and renders
the server and client documents a new tunnel endpoint needs.
"""

from wgprovision.config import EngineSettings
from wgprovision.services.wireguard_provisioning_service import WireGuardProvisioningService

__version__ = "1.0.0"

__all__ = ["EngineSettings", "WireGuardProvisioningService", "__version__"]
