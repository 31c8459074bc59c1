"""
WireGuard Configuration Rendering

Renders the documents a provisioned peer needs:
- the [Peer] stanza appended to the server interface document
- the full client document imported by the WireGuard apps
- the full server interface document listing every active peer

Rendering is pure: no I/O and no randomness. Field order and section names
are fixed because WireGuard clients parse the format strictly.
"""

import ipaddress
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from wgprovision.config import DEFAULT_PERSISTENT_KEEPALIVE
from wgprovision.exceptions import ConfigError
from wgprovision.models.wireguard.provisioning import Network, Peer
from wgprovision.networking.wireguard_keys import validate_private_key_format

logger = logging.getLogger(__name__)


@dataclass
class InterfaceSection:
    """
    [Interface] section

    Attributes:
        private_key: Base64 private key of the local end
        address: Local address with prefix length (e.g. 10.0.0.2/24)
        dns_servers: Resolvers pushed to the client, omitted when empty
        listen_port: UDP listen port, omitted when None
    """
    private_key: str
    address: str
    dns_servers: List[str] = field(default_factory=list)
    listen_port: Optional[int] = None

    def to_config_section(self) -> str:
        lines = [
            "[Interface]",
            f"PrivateKey = {self.private_key}",
            f"Address = {self.address}",
        ]
        if self.listen_port is not None:
            lines.append(f"ListenPort = {self.listen_port}")
        if self.dns_servers:
            lines.append(f"DNS = {', '.join(self.dns_servers)}")
        return "\n".join(lines)


@dataclass
class PeerSection:
    """
    [Peer] section

    Attributes:
        public_key: Base64 public key of the remote end
        allowed_ips: Ranges routed to the remote end
        endpoint: Remote host:port, omitted when None
        persistent_keepalive: Keepalive interval, omitted when None or 0
    """
    public_key: str
    allowed_ips: List[str]
    endpoint: Optional[str] = None
    persistent_keepalive: Optional[int] = None

    def to_config_section(self) -> str:
        lines = [
            "[Peer]",
            f"PublicKey = {self.public_key}",
        ]
        if self.endpoint:
            lines.append(f"Endpoint = {self.endpoint}")
        lines.append(f"AllowedIPs = {', '.join(self.allowed_ips)}")
        if self.persistent_keepalive:
            lines.append(f"PersistentKeepalive = {self.persistent_keepalive}")
        return "\n".join(lines)


def _join_sections(sections: Iterable) -> str:
    return "\n\n".join(section.to_config_section() for section in sections) + "\n"


def _require(value, label: str) -> None:
    if not value:
        logger.error(f"Cannot render WireGuard configuration: missing {label}")
        raise ConfigError(f"Missing required field: {label}")


def _check_peer(network: Network, peer: Peer) -> None:
    _require(network.cidr, "network range")
    _require(peer.address, "peer address")
    _require(peer.public_key, "peer public key")

    if peer.network_id != network.id:
        logger.error(f"Peer {peer.id} belongs to network {peer.network_id}, not {network.id}")
        raise ConfigError(f"Peer {peer.id} does not belong to network {network.id}")

    if ipaddress.IPv4Address(peer.address) not in network.network:
        logger.error(f"Peer {peer.id} address {peer.address} is outside {network.cidr}")
        raise ConfigError(f"Peer address {peer.address} is not in network {network.cidr}")


def render_server_peer_stanza(network: Network, peer: Peer) -> str:
    """
    Render the [Peer] stanza for the server interface document

    Args:
        network: Network the peer belongs to
        peer: Provisioned peer

    Returns:
        Stanza text ending with a newline

    Raises:
        ConfigError: If a required field is missing
    """
    _check_peer(network, peer)

    section = PeerSection(
        public_key=peer.public_key,
        allowed_ips=[f"{peer.address}/32"],
    )
    return _join_sections([section])


def render_client_config(
    network: Network,
    peer: Peer,
    peer_private_key: str,
    persistent_keepalive: int = DEFAULT_PERSISTENT_KEEPALIVE,
) -> str:
    """
    Render the full client document for a peer

    Args:
        network: Network the peer belongs to
        peer: Provisioned peer
        peer_private_key: Base64 private key of the peer
        persistent_keepalive: Keepalive interval in seconds (0 omits the line)

    Returns:
        Client document text ending with a newline

    Raises:
        ConfigError: If a required field is missing or the private key is malformed
    """
    _check_peer(network, peer)
    _require(peer_private_key, "peer private key")
    _require(network.server_public_key, "server public key")
    _require(network.endpoint_host, "network endpoint")

    if not validate_private_key_format(peer_private_key):
        logger.error(f"Cannot render client configuration for peer {peer.id}: malformed private key")
        raise ConfigError("Peer private key is not a base64-encoded 32 byte key")

    interface = InterfaceSection(
        private_key=peer_private_key,
        address=f"{peer.address}/{network.prefix_length}",
        dns_servers=list(network.dns_servers),
    )
    server = PeerSection(
        public_key=network.server_public_key,
        allowed_ips=[network.cidr],
        endpoint=network.endpoint,
        persistent_keepalive=persistent_keepalive,
    )
    return _join_sections([interface, server])


def render_server_config(network: Network, peers: Iterable[Peer]) -> str:
    """
    Render the server interface document with one stanza per active peer

    Peers are ordered by address; only active peers are listed.

    Args:
        network: Network served by the interface
        peers: Peers of the network

    Returns:
        Server document text ending with a newline

    Raises:
        ConfigError: If the server private key or gateway is missing
    """
    _require(network.cidr, "network range")
    _require(network.server_private_key, "server private key")
    _require(network.gateway, "gateway address")

    interface = InterfaceSection(
        private_key=network.server_private_key,
        address=f"{network.gateway}/{network.prefix_length}",
        listen_port=network.listen_port,
    )

    active = [peer for peer in peers if peer.active]
    for peer in active:
        _check_peer(network, peer)
    active.sort(key=lambda p: ipaddress.IPv4Address(p.address))

    sections = [interface] + [
        PeerSection(public_key=peer.public_key, allowed_ips=[f"{peer.address}/32"])
        for peer in active
    ]
    return _join_sections(sections)


def parse_config(text: str) -> List[Tuple[str, Dict[str, str]]]:
    """
    Parse a WireGuard document into (section, fields) pairs

    Blank lines and # comments are skipped. Sections keep their order.

    Raises:
        ConfigError: If a field appears outside a section or a line has no '='
    """
    sections: List[Tuple[str, Dict[str, str]]] = []

    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            sections.append((line[1:-1], {}))
            continue
        if "=" not in line:
            raise ConfigError(f"Line {number}: expected 'Key = Value'")
        if not sections:
            raise ConfigError(f"Line {number}: field outside of a section")
        key, value = line.split("=", 1)
        sections[-1][1][key.strip()] = value.strip()

    return sections


def config_filename(kind: str, now: Optional[float] = None) -> str:
    """Download file name, e.g. wireguard-client-1700000000000.conf"""
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    return f"wireguard-{kind}-{timestamp_ms}.conf"


def config_file_bytes(config_text: str) -> bytes:
    return config_text.encode("utf-8")
