"""
IP Address Pool Manager

Manages IP address allocation for WireGuard peers.
Implements thread-safe, per-network IP allocation with exhaustion detection.

Each pool is a fixed-size slot table indexed by the address offset inside the
network range. A slot is free, reserved (network, broadcast, gateway) or held
by a peer, so the free set and the held set are disjoint by construction and
their union is always the range minus its reservations.

Security considerations:
- Per-network locks so concurrent provisioning never hands out one address twice
- Reserved IPs protected from allocation
- Network/broadcast addresses excluded
"""

import ipaddress
import logging
import threading
from typing import Dict, Iterable, List, Optional

from wgprovision.config import DEFAULT_MAX_POOL_SIZE
from wgprovision.exceptions import (
    AddressConflictError,
    NetworkTooLargeError,
    PoolExhaustedError,
)
from wgprovision.models.wireguard.provisioning import Network, Peer, PoolStats

logger = logging.getLogger(__name__)

FREE = 0
RESERVED = 1
HELD = 2

_FREE_BYTE = bytes([FREE])


class IPPoolManager:
    """
    Thread-safe IP address pool for one WireGuard network

    Attributes:
        network: IPv4Network representing the address pool
        network_id: Identifier of the owning network (for errors and logs)
        reuse_released: Lowest-free allocation when True, next-fit when False
        _slots: One byte per address offset (FREE, RESERVED or HELD)
        _holders: Offset -> peer id for HELD slots
        _lock: Thread lock for concurrent access safety
    """

    def __init__(
        self,
        network: str,
        reserved_ips: Optional[List[str]] = None,
        network_id: Optional[str] = None,
        reuse_released: bool = True,
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
    ):
        """
        Initialize IP pool manager

        Args:
            network: Network CIDR (e.g., "10.0.0.0/24")
            reserved_ips: Extra reserved addresses (e.g., ["10.0.0.1"])
            network_id: Owning network identifier
            reuse_released: Reuse released addresses immediately
            max_pool_size: Largest range accepted, in addresses

        Raises:
            ValueError: If the CIDR or a reserved IP is invalid
            NetworkTooLargeError: If the range is larger than max_pool_size
        """
        try:
            self.network = ipaddress.IPv4Network(network, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid network CIDR: {e}")

        size = self.network.num_addresses
        if size > max_pool_size:
            raise NetworkTooLargeError(
                pool_range=str(self.network),
                size=size,
                max_pool_size=max_pool_size,
            )

        self.network_id = network_id or str(self.network)
        self.reuse_released = reuse_released

        self._base = int(self.network.network_address)
        self._slots = bytearray(size)
        self._holders: Dict[int, str] = {}
        self._cursor = 0
        self._lock = threading.Lock()

        # Always reserve network and broadcast addresses
        self._slots[0] = RESERVED
        self._slots[size - 1] = RESERVED

        if reserved_ips:
            for ip_str in reserved_ips:
                try:
                    ip = ipaddress.IPv4Address(ip_str)
                except ValueError as e:
                    raise ValueError(f"Invalid reserved IP {ip_str}: {e}")
                if ip not in self.network:
                    raise ValueError(
                        f"Reserved IP {ip_str} is not in network {self.network}"
                    )
                self._slots[self._offset(ip)] = RESERVED

        logger.info(
            f"Initialized IP pool: network={self.network}, id={self.network_id}, "
            f"reserved={self.reserved_count()}, available={self.available_count()}"
        )

    @classmethod
    def for_network(
        cls,
        network: Network,
        peers: Iterable[Peer] = (),
        reuse_released: bool = True,
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
    ) -> "IPPoolManager":
        """
        Build a pool fresh from a network record and its peers

        Non-revoked peers are re-reserved, revoked ones are ignored.

        Raises:
            AddressConflictError: If two active peers share an address
        """
        pool = cls(
            network=network.cidr,
            reserved_ips=[network.gateway] if network.gateway else None,
            network_id=network.id,
            reuse_released=reuse_released,
            max_pool_size=max_pool_size,
        )
        for peer in peers:
            if not peer.revoked:
                pool.reserve(peer.address, holder=peer.id)
        return pool

    def _offset(self, ip: ipaddress.IPv4Address) -> int:
        return int(ip) - self._base

    def _address(self, offset: int) -> str:
        return str(ipaddress.IPv4Address(self._base + offset))

    def _parse(self, ip_address: str) -> ipaddress.IPv4Address:
        ip = ipaddress.IPv4Address(ip_address)
        if ip not in self.network:
            raise ValueError(f"IP {ip} not in network {self.network}")
        return ip

    def _find_free(self) -> int:
        if self.reuse_released:
            return self._slots.find(_FREE_BYTE)

        # Next-fit: scan forward from the last hand-out, then wrap around once
        offset = self._slots.find(_FREE_BYTE, self._cursor)
        if offset == -1:
            offset = self._slots.find(_FREE_BYTE, 0, self._cursor)
        return offset

    def allocate(self, holder: str) -> str:
        """
        Allocate the next free address

        Thread-safe; the lowest free offset wins unless next-fit is enabled.

        Args:
            holder: Identifier of the peer taking the address

        Returns:
            Allocated IP address as string

        Raises:
            PoolExhaustedError: If no IPs are available
        """
        with self._lock:
            offset = self._find_free()
            if offset == -1:
                raise PoolExhaustedError(
                    network_id=self.network_id,
                    pool_range=str(self.network),
                    allocated_count=len(self._holders)
                )

            self._slots[offset] = HELD
            self._holders[offset] = holder
            self._cursor = offset + 1

            ip_str = self._address(offset)
            logger.info(f"Allocated IP {ip_str} to peer {holder} in network {self.network_id}")
            return ip_str

    def reserve(self, ip_address: str, holder: str) -> None:
        """
        Mark a specific address as held, e.g. when importing existing peers

        Reserving an address already held by the same holder is a no-op.

        Args:
            ip_address: Address to hold
            holder: Identifier of the peer holding it

        Raises:
            AddressConflictError: If the address is reserved or held by another peer
            ValueError: If the address is outside the network
        """
        ip = self._parse(ip_address)
        offset = self._offset(ip)

        with self._lock:
            state = self._slots[offset]
            if state == RESERVED:
                raise AddressConflictError(address=str(ip), holder=None)
            if state == HELD:
                current = self._holders[offset]
                if current == holder:
                    return
                raise AddressConflictError(address=str(ip), holder=current)

            self._slots[offset] = HELD
            self._holders[offset] = holder
            logger.info(f"Reserved IP {ip} for peer {holder} in network {self.network_id}")

    def release(self, ip_address: str, holder: Optional[str] = None) -> bool:
        """
        Return an address to the pool

        Idempotent: releasing an address that is not held does nothing.
        When holder is given, an address held by a different peer is left alone.

        Args:
            ip_address: Address to release
            holder: Expected holder of the address

        Returns:
            True if the address was held and is now free
        """
        ip = self._parse(ip_address)
        offset = self._offset(ip)

        with self._lock:
            if self._slots[offset] != HELD:
                logger.warning(f"Release of unheld IP {ip} in network {self.network_id} ignored")
                return False

            current = self._holders[offset]
            if holder is not None and current != holder:
                logger.warning(
                    f"Release of IP {ip} by peer {holder} ignored, "
                    f"held by peer {current} in network {self.network_id}"
                )
                return False

            self._slots[offset] = FREE
            del self._holders[offset]
            logger.info(f"Released IP {ip} from peer {current} in network {self.network_id}")
            return True

    def holder_of(self, ip_address: str) -> Optional[str]:
        """Peer id holding an address, or None"""
        offset = self._offset(self._parse(ip_address))
        with self._lock:
            return self._holders.get(offset)

    def is_reserved(self, ip_address: str) -> bool:
        offset = self._offset(self._parse(ip_address))
        with self._lock:
            return self._slots[offset] == RESERVED

    def available_addresses(self) -> List[str]:
        """Free addresses in ascending order"""
        with self._lock:
            return [self._address(i) for i, state in enumerate(self._slots) if state == FREE]

    def held_addresses(self) -> Dict[str, str]:
        """Held address -> peer id"""
        with self._lock:
            return {self._address(i): holder for i, holder in sorted(self._holders.items())}

    def reserved_addresses(self) -> List[str]:
        with self._lock:
            return [self._address(i) for i, state in enumerate(self._slots) if state == RESERVED]

    def reserved_count(self) -> int:
        with self._lock:
            return self._slots.count(RESERVED)

    def available_count(self) -> int:
        """
        Get count of available IP addresses

        Returns:
            Number of unallocated, non-reserved IPs
        """
        with self._lock:
            return self._slots.count(FREE)

    def get_pool_stats(self) -> PoolStats:
        """
        Get pool statistics

        Network and broadcast addresses are left out of every count.
        """
        with self._lock:
            total = self.network.num_addresses - 2
            reserved = self._slots.count(RESERVED) - 2
            allocated = len(self._holders)
            available = self._slots.count(FREE)

        return PoolStats(
            total_addresses=total,
            reserved_addresses=reserved,
            allocated_addresses=allocated,
            available_addresses=available,
            utilization_percent=int((allocated / total) * 100) if total > 0 else 0,
        )


class AddressAllocator:
    """
    Address pools for every network the engine knows

    Each network gets its own IPPoolManager and therefore its own lock, so
    provisioning in one network never waits on another.
    """

    def __init__(
        self,
        reuse_released: bool = True,
        max_pool_size: int = DEFAULT_MAX_POOL_SIZE,
    ):
        self.reuse_released = reuse_released
        self.max_pool_size = max_pool_size
        self._pools: Dict[str, IPPoolManager] = {}
        self._registry_lock = threading.Lock()

    def load(self, network: Network, peers: Iterable[Peer] = ()) -> IPPoolManager:
        """
        (Re)build the pool of a network from its active peers

        Replaces any pool already registered for the network. The new pool is
        installed only once every peer has been reserved without conflict.
        """
        pool = IPPoolManager.for_network(
            network,
            peers,
            reuse_released=self.reuse_released,
            max_pool_size=self.max_pool_size,
        )
        with self._registry_lock:
            self._pools[network.id] = pool
        return pool

    def pool_for(self, network: Network) -> IPPoolManager:
        """Pool of a network, created empty on first use"""
        with self._registry_lock:
            pool = self._pools.get(network.id)
            if pool is None:
                pool = IPPoolManager.for_network(
                    network,
                    reuse_released=self.reuse_released,
                    max_pool_size=self.max_pool_size,
                )
                self._pools[network.id] = pool
            return pool

    def allocate(self, network: Network, holder: str) -> str:
        return self.pool_for(network).allocate(holder)

    def release(self, network: Network, ip_address: str, holder: Optional[str] = None) -> bool:
        return self.pool_for(network).release(ip_address, holder=holder)

    def reserve(self, network: Network, ip_address: str, holder: str) -> None:
        self.pool_for(network).reserve(ip_address, holder)

    def get_pool_stats(self, network: Network) -> PoolStats:
        return self.pool_for(network).get_pool_stats()
