"""
Pytest configuration and shared fixtures
"""

import base64
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from wgprovision.config import EngineSettings
from wgprovision.models.wireguard.provisioning import Network, Peer, PeerStatus
from wgprovision.services.wireguard_provisioning_service import WireGuardProvisioningService


def b64_key(fill: int) -> str:
    """Deterministic base64 key made of one repeated byte"""
    return base64.b64encode(bytes([fill]) * 32).decode("ascii")


@pytest.fixture(scope="session")
def test_network():
    """Test IP network for WireGuard"""
    return "10.0.0.0/24"


@pytest.fixture(scope="session")
def test_gateway():
    """Test gateway address"""
    return "10.0.0.1"


@pytest.fixture
def server_public_key():
    return b64_key(1)


@pytest.fixture
def server_private_key():
    return b64_key(2)


@pytest.fixture
def network(test_network, test_gateway, server_public_key, server_private_key):
    """Network record as the persistence layer would hand it over"""
    return Network(
        id="net-1",
        name="office",
        cidr=test_network,
        endpoint_host="vpn.example.com",
        listen_port=51820,
        gateway=test_gateway,
        dns_servers=["1.1.1.1", "1.0.0.1"],
        server_public_key=server_public_key,
        server_private_key=server_private_key,
    )


@pytest.fixture
def peer(network):
    """Active peer at 10.0.0.2"""
    return Peer(
        id="peer-1",
        network_id=network.id,
        public_key=b64_key(3),
        address="10.0.0.2",
        status=PeerStatus.ACTIVE,
    )


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def service(settings, network):
    """Provisioning service with the test network registered"""
    svc = WireGuardProvisioningService(settings=settings)
    svc.register_network(network)
    return svc


@pytest.fixture
def key_factory():
    """Returns a helper building deterministic base64 keys"""
    return b64_key
