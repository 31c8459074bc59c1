"""
WireGuard Provisioning Models

Pydantic records exchanged between the provisioning engine and the
persistence / CRUD layer that calls it.

Security considerations:
- Private key material is excluded from repr so it never lands in logs
- Public keys validated as base64 of 32 raw bytes
- Network ranges validated to leave at least one usable peer address
"""

import base64
import binascii
import ipaddress
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from wgprovision.networking.wireguard_qr import ClientArtifact

KEY_LENGTH = 32


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_b64_key(v: str, label: str) -> str:
    """Validate a base64-encoded 32 byte key (44 characters)"""
    if len(v) != 44:
        raise ValueError(f"{label} must be 44 characters (base64 encoded)")
    try:
        decoded = base64.b64decode(v, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 {label}: {e}")
    if len(decoded) != KEY_LENGTH:
        raise ValueError(f"{label} must decode to {KEY_LENGTH} bytes")
    return v


class PeerStatus(str, Enum):
    """Peer lifecycle states"""
    REQUESTED = "requested"
    ACTIVE = "active"
    REVOKED = "revoked"


class KeyPair(BaseModel):
    """
    Raw X25519 key pair

    Both halves are 32 raw bytes. The private half is hidden from repr and
    is handed to the caller once; the engine never stores it.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    private_key: bytes = Field(..., repr=False, description="Clamped private scalar")
    public_key: bytes = Field(..., description="Public value derived from private_key")

    @field_validator('private_key', 'public_key')
    @classmethod
    def validate_length(cls, v: bytes) -> bytes:
        if len(v) != KEY_LENGTH:
            raise ValueError(f"key must be {KEY_LENGTH} bytes, got {len(v)}")
        return v

    @property
    def private_key_b64(self) -> str:
        return base64.b64encode(self.private_key).decode('ascii')

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key).decode('ascii')


class Network(BaseModel):
    """
    VPN network a peer is provisioned into

    Created by an administrator action outside the engine. The engine only
    reads it, apart from the server key pair generated at creation time.
    """
    model_config = ConfigDict(extra='forbid')

    id: str = Field(default_factory=_new_id, min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    cidr: str = Field(..., description="IPv4 range, e.g. 10.0.0.0/24")
    endpoint_host: str = Field(
        ...,
        min_length=1,
        description="Public hostname or address clients connect to"
    )
    listen_port: int = Field(51820, ge=1, le=65535)
    gateway: Optional[str] = Field(None, description="Server address inside cidr")
    dns_servers: List[str] = Field(default_factory=list)
    server_public_key: str = Field(..., description="Base64 server public key")
    server_private_key: Optional[str] = Field(
        None,
        repr=False,
        description="Base64 server private key, needed only for the server document"
    )

    @field_validator('cidr')
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        try:
            network = ipaddress.IPv4Network(v, strict=True)
        except ValueError as e:
            raise ValueError(f"Invalid network CIDR: {e}")
        return str(network)

    @field_validator('gateway')
    @classmethod
    def validate_gateway(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return str(ipaddress.IPv4Address(v))

    @field_validator('dns_servers')
    @classmethod
    def validate_dns_servers(cls, v: List[str]) -> List[str]:
        return [str(ipaddress.ip_address(server.strip())) for server in v]

    @field_validator('server_public_key')
    @classmethod
    def validate_server_public_key(cls, v: str) -> str:
        return _check_b64_key(v, "server_public_key")

    @field_validator('server_private_key')
    @classmethod
    def validate_server_private_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_b64_key(v, "server_private_key")

    @model_validator(mode='after')
    def validate_capacity(self) -> "Network":
        network = self.network
        reserved = {network.network_address, network.broadcast_address}

        if self.gateway is not None:
            gateway = ipaddress.IPv4Address(self.gateway)
            if gateway not in network:
                raise ValueError(f"Gateway {gateway} is not in network {network}")
            if gateway in reserved:
                raise ValueError(
                    f"Gateway {gateway} cannot be the network or broadcast address"
                )
            reserved.add(gateway)

        if network.num_addresses - len(reserved) < 1:
            raise ValueError(
                f"Network {network} has no usable peer address after reservations"
            )
        return self

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.cidr)

    @property
    def prefix_length(self) -> int:
        return self.network.prefixlen

    @property
    def endpoint(self) -> str:
        """Endpoint as host:port, bracketing IPv6 literals"""
        host = self.endpoint_host
        try:
            if ipaddress.ip_address(host).version == 6:
                host = f"[{host}]"
        except ValueError:
            pass
        return f"{host}:{self.listen_port}"


class Peer(BaseModel):
    """Provisioned tunnel endpoint inside a network"""
    model_config = ConfigDict(extra='forbid')

    id: str = Field(default_factory=_new_id, min_length=1, max_length=128)
    network_id: str = Field(..., min_length=1)
    public_key: str = Field(..., description="Base64 peer public key")
    address: str = Field(..., description="Address assigned from the network range")
    name: Optional[str] = Field(None, max_length=255)
    status: PeerStatus = PeerStatus.REQUESTED
    created_at: datetime = Field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None

    @field_validator('public_key')
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        return _check_b64_key(v, "public_key")

    @field_validator('address')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return str(ipaddress.IPv4Address(v))

    @property
    def revoked(self) -> bool:
        return self.status == PeerStatus.REVOKED

    @property
    def active(self) -> bool:
        return self.status == PeerStatus.ACTIVE


class RenderedConfig(BaseModel):
    """Server peer stanza and full client document for one peer"""
    model_config = ConfigDict(extra='forbid', frozen=True)

    server_peer_stanza: str
    client_config: str = Field(..., repr=False)


class ProvisionResult(BaseModel):
    """
    Outcome of a successful provisioning call

    private_key is the peer's only copy; persisting it is the caller's job.
    """
    model_config = ConfigDict(extra='forbid', arbitrary_types_allowed=True)

    peer: Peer
    private_key: str = Field(..., repr=False)
    config: RenderedConfig
    artifact: Optional[ClientArtifact] = Field(None, repr=False)


class PoolStats(BaseModel):
    """Address pool statistics for one network"""
    model_config = ConfigDict(extra='forbid')

    total_addresses: int
    reserved_addresses: int
    allocated_addresses: int
    available_addresses: int
    utilization_percent: int
