"""
WireGuard Peer Provisioning Service

Main service layer for the peer provisioning workflow.

Workflow:
1. Generate a fresh X25519 keypair for the new peer
2. Allocate the lowest free address from the network pool
3. Render the server peer stanza and the client document
4. Optionally encode the client document as a QR code
5. Activate the peer and return everything to the caller

Any failure after step 2 releases the address before the error propagates,
so the pool never keeps an address without a peer behind it.

Security considerations:
- Per-network address locks, no global serialisation
- Peer private keys are returned once and never stored or logged
- Revocation releases the address but never touches server keys
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from wgprovision.config import EngineSettings
from wgprovision.exceptions import (
    AddressConflictError,
    ConfigError,
    CryptoError,
    EncodingError,
    InvalidTransitionError,
    NetworkNotFoundError,
    NetworkTooLargeError,
    PeerNotFoundError,
    PoolExhaustedError,
    ProvisioningError,
)
from wgprovision.models.wireguard.provisioning import (
    Network,
    Peer,
    PeerStatus,
    PoolStats,
    ProvisionResult,
    RenderedConfig,
)
from wgprovision.networking import wireguard_config
from wgprovision.networking.wireguard_keys import (
    generate_keypair,
    get_public_key_from_private,
    validate_private_key_format,
)
from wgprovision.networking.wireguard_qr import ClientArtifact, encode_client_config
from wgprovision.services.ip_pool_manager import AddressAllocator

logger = logging.getLogger(__name__)

__all__ = [
    "WireGuardProvisioningService",
    "ProvisioningError",
    "CryptoError",
    "PoolExhaustedError",
    "AddressConflictError",
    "ConfigError",
    "EncodingError",
    "NetworkNotFoundError",
    "NetworkTooLargeError",
    "PeerNotFoundError",
    "InvalidTransitionError",
]

_TRANSITIONS = {
    PeerStatus.REQUESTED: {PeerStatus.ACTIVE, PeerStatus.REVOKED},
    PeerStatus.ACTIVE: {PeerStatus.REVOKED},
    PeerStatus.REVOKED: set(),
}


def _transition(peer: Peer, target: PeerStatus) -> Peer:
    if target not in _TRANSITIONS[peer.status]:
        raise InvalidTransitionError(
            f"Peer {peer.id} cannot move from {peer.status.value} to {target.value}"
        )
    update = {"status": target}
    if target == PeerStatus.REVOKED:
        update["revoked_at"] = datetime.now(timezone.utc)
    return peer.model_copy(update=update)


class WireGuardProvisioningService:
    """
    WireGuard peer provisioning service

    Holds the networks and peers handed to it by the persistence layer and
    runs the provision / revoke state machine against them.

    Attributes:
        settings: Engine settings
        allocator: Per-network address pools
        _lock: Guards the network and peer registries
        _networks: network_id -> Network
        _peers: peer_id -> Peer
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        """
        Initialize provisioning service

        Args:
            settings: Engine settings, defaults when omitted
        """
        self.settings = settings or EngineSettings()
        self.allocator = AddressAllocator(
            reuse_released=self.settings.reuse_released_addresses,
            max_pool_size=self.settings.max_pool_size,
        )

        self._lock = threading.Lock()
        self._networks: Dict[str, Network] = {}
        self._peers: Dict[str, Peer] = {}

        logger.info(
            f"Initialized WireGuard provisioning service: "
            f"keepalive={self.settings.persistent_keepalive}, "
            f"reuse_released={self.settings.reuse_released_addresses}"
        )

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    def create_network(
        self,
        name: str,
        cidr: str,
        endpoint_host: str,
        listen_port: int = 51820,
        gateway: Optional[str] = None,
        dns_servers: Optional[List[str]] = None,
        network_id: Optional[str] = None,
    ) -> Network:
        """
        Create a network with a freshly generated server keypair

        The server keypair is generated exactly once here; the returned record
        carries both halves for the persistence layer to store.

        Raises:
            CryptoError: If key generation fails
            pydantic.ValidationError: If the range, gateway or DNS list is invalid
            NetworkTooLargeError: If the range exceeds the configured pool size
        """
        keypair = generate_keypair()

        fields = dict(
            name=name,
            cidr=cidr,
            endpoint_host=endpoint_host,
            listen_port=listen_port,
            gateway=gateway,
            dns_servers=dns_servers or [],
            server_public_key=keypair.public_key_b64,
            server_private_key=keypair.private_key_b64,
        )
        if network_id is not None:
            fields["id"] = network_id

        return self.register_network(Network(**fields))

    def register_network(self, network: Network, peers: Iterable[Peer] = ()) -> Network:
        """
        Register an existing network and its peers with the engine

        Addresses of non-revoked peers are reserved again, so the pool matches
        the persisted assignments. Registering a network again replaces its
        pool and peers.

        Raises:
            AddressConflictError: If two non-revoked peers share an address
            ValueError: If a peer belongs to another network
            NetworkTooLargeError: If the range exceeds the configured pool size
        """
        peers = list(peers)
        for peer in peers:
            if peer.network_id != network.id:
                raise ValueError(f"Peer {peer.id} does not belong to network {network.id}")

        with self._lock:
            self.allocator.load(network, peers)

            for peer_id in [p.id for p in self._peers.values() if p.network_id == network.id]:
                del self._peers[peer_id]
            self._networks[network.id] = network
            for peer in peers:
                self._peers[peer.id] = peer

        logger.info(
            f"Registered network {network.id} ({network.name}): "
            f"range={network.cidr}, peers={len(peers)}"
        )
        return network

    def get_network(self, network_id: str) -> Network:
        network = self._networks.get(network_id)
        if network is None:
            raise NetworkNotFoundError(f"Network {network_id} is not registered")
        return network

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(
        self,
        network_id: str,
        name: Optional[str] = None,
        include_artifact: bool = False,
    ) -> ProvisionResult:
        """
        Provision a new peer in a network

        Args:
            network_id: Network to provision into
            name: Optional peer label
            include_artifact: Also encode the client document as a QR code

        Returns:
            ProvisionResult with the active peer, its one-time private key,
            the rendered documents and the optional QR artifact

        Raises:
            NetworkNotFoundError: If the network is not registered
            CryptoError: If key generation fails
            PoolExhaustedError: If the network has no free address
            ConfigError: If rendering fails
            EncodingError: If the client document does not fit in a QR code
            AddressConflictError: If the network was re-registered mid-call
        """
        network = self.get_network(network_id)

        # Keys have no allocation side effect, so a later failure just drops them
        keypair = generate_keypair()
        peer_id = uuid.uuid4().hex

        pool = self.allocator.pool_for(network)
        address = pool.allocate(holder=peer_id)

        try:
            peer = Peer(
                id=peer_id,
                network_id=network.id,
                public_key=keypair.public_key_b64,
                address=address,
                name=name,
            )

            config = RenderedConfig(
                server_peer_stanza=wireguard_config.render_server_peer_stanza(network, peer),
                client_config=wireguard_config.render_client_config(
                    network,
                    peer,
                    keypair.private_key_b64,
                    persistent_keepalive=self.settings.persistent_keepalive,
                ),
            )

            artifact = None
            if include_artifact:
                artifact = self._encode(config.client_config)

            peer = _transition(peer, PeerStatus.ACTIVE)
            with self._lock:
                # register_network may have replaced the pool since allocation
                if self.allocator.pool_for(network) is not pool:
                    raise AddressConflictError(
                        address=address,
                        holder=None,
                        message=(
                            f"Network {network.id} was re-registered while peer {peer_id} "
                            f"was being provisioned at {address}"
                        ),
                    )
                self._peers[peer.id] = peer

        except BaseException as e:
            # Interruptions included: the address must never outlive a failed call
            pool.release(address, holder=peer_id)
            logger.error(
                f"Provisioning in network {network.id} failed after allocating "
                f"{address}, allocation rolled back: {type(e).__name__}"
            )
            raise

        logger.info(
            f"Provisioned peer {peer.id} in network {network.id} with IP {address}"
        )

        return ProvisionResult(
            peer=peer,
            private_key=keypair.private_key_b64,
            config=config,
            artifact=artifact,
        )

    def revoke(self, peer: Union[str, Peer]) -> Peer:
        """
        Revoke a peer and release its address

        Revoking an already revoked peer is a no-op. The server keypair is
        left untouched.

        Args:
            peer: Peer id or peer record

        Returns:
            The revoked peer record

        Raises:
            PeerNotFoundError: If the peer is unknown
        """
        peer_id = peer.id if isinstance(peer, Peer) else peer

        with self._lock:
            current = self._peers.get(peer_id)
            if current is None:
                raise PeerNotFoundError(f"Peer {peer_id} is not known")

            if current.revoked:
                logger.warning(f"Peer {peer_id} is already revoked")
                return current

            network = self._networks[current.network_id]
            revoked = _transition(current, PeerStatus.REVOKED)
            self._peers[peer_id] = revoked
            self.allocator.release(network, current.address, holder=peer_id)

        logger.info(f"Revoked peer {peer_id} in network {network.id}, released {current.address}")
        return revoked

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_client_config(self, peer_id: str, private_key: str) -> str:
        """
        Render the client document of an active peer again

        The engine keeps no private keys, so the caller supplies the key it
        persisted at provisioning time. It must match the peer's public key.

        Raises:
            PeerNotFoundError: If the peer is unknown
            ConfigError: If the peer is revoked or the key does not match
        """
        peer = self.get_peer(peer_id)
        if not peer.active:
            raise ConfigError(f"Peer {peer_id} is {peer.status.value}, not active")

        if not validate_private_key_format(private_key):
            raise ConfigError("Peer private key is not a base64-encoded 32 byte key")
        if get_public_key_from_private(private_key) != peer.public_key:
            logger.error(f"Private key supplied for peer {peer_id} does not match its public key")
            raise ConfigError(f"Private key does not belong to peer {peer_id}")

        return wireguard_config.render_client_config(
            self.get_network(peer.network_id),
            peer,
            private_key,
            persistent_keepalive=self.settings.persistent_keepalive,
        )

    def render_client_artifact(self, peer_id: str, private_key: str) -> ClientArtifact:
        """
        Encode the client document of an active peer as a QR code

        Raises:
            EncodingError: If the document does not fit; the text document is
                still available from render_client_config
        """
        return self._encode(self.render_client_config(peer_id, private_key))

    def render_server_config(self, network_id: str) -> str:
        """Full server interface document with a stanza per active peer"""
        network = self.get_network(network_id)
        return wireguard_config.render_server_config(network, self.list_peers(network_id))

    def _encode(self, client_config: str) -> ClientArtifact:
        return encode_client_config(
            client_config,
            error_correction=self.settings.qr_error_correction,
            box_size=self.settings.qr_box_size,
            border=self.settings.qr_border,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_peer(self, peer_id: str) -> Peer:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise PeerNotFoundError(f"Peer {peer_id} is not known")
        return peer

    def list_peers(
        self,
        network_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[Peer]:
        """
        Peers known to the engine, ordered by creation time

        Args:
            network_id: Restrict to one network
            include_revoked: Include revoked peers
        """
        with self._lock:
            peers = list(self._peers.values())

        if network_id is not None:
            peers = [p for p in peers if p.network_id == network_id]
        if not include_revoked:
            peers = [p for p in peers if not p.revoked]

        peers.sort(key=lambda p: p.created_at)
        return peers

    def get_pool_stats(self, network_id: str) -> PoolStats:
        return self.allocator.get_pool_stats(self.get_network(network_id))
