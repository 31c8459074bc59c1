"""
Unit tests for IP Pool Manager

Tests address allocation, release, reservation and exhaustion detection,
plus the per-network AddressAllocator registry.
"""

import ipaddress
import threading

import pytest

from wgprovision.exceptions import (
    AddressConflictError,
    NetworkTooLargeError,
    PoolExhaustedError,
    ProvisioningError,
)
from wgprovision.models.wireguard.provisioning import Network, PeerStatus
from wgprovision.services.ip_pool_manager import AddressAllocator, IPPoolManager


def assert_pool_invariants(pool: IPPoolManager, reserved):
    """Free and held sets are disjoint and cover the range minus reservations"""
    available = set(pool.available_addresses())
    held = set(pool.held_addresses())
    usable = {str(ip) for ip in pool.network} - set(reserved)

    assert available.isdisjoint(held)
    assert held.isdisjoint(reserved)
    assert available | held == usable


class TestIPPoolManager:
    """Unit tests for IPPoolManager"""

    def test_initialize_pool(self):
        """
        Given network CIDR
        When initializing pool
        Then should create pool with correct capacity
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        # 256 addresses - 2 (network/broadcast) - 1 (gateway) = 253 available
        assert pool.available_count() == 253
        assert pool.reserved_addresses() == ["10.0.0.0", "10.0.0.1", "10.0.0.255"]

    def test_first_allocation_is_lowest_usable(self):
        """
        Given a /24 with gateway 10.0.0.1
        When allocating
        Then should return 10.0.0.2, then 10.0.0.3
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        assert pool.allocate(holder="peer-1") == "10.0.0.2"
        assert pool.allocate(holder="peer-2") == "10.0.0.3"
        assert pool.held_addresses() == {"10.0.0.2": "peer-1", "10.0.0.3": "peer-2"}

    def test_allocate_multiple_unique_ips(self):
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        ips = {pool.allocate(holder=f"peer-{i}") for i in range(10)}

        assert len(ips) == 10
        assert_pool_invariants(pool, ["10.0.0.0", "10.0.0.1", "10.0.0.255"])

    def test_release_makes_lowest_address_reusable(self):
        """
        Given allocated addresses
        When releasing the lowest one
        Then the next allocation should reuse it
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])
        first = pool.allocate(holder="peer-1")
        pool.allocate(holder="peer-2")

        assert pool.release(first) is True

        assert pool.allocate(holder="peer-3") == first

    def test_allocate_release_round_trip(self):
        """
        Given a pool with some allocations
        When allocating then releasing one address
        Then the available set should be exactly as before
        """
        pool = IPPoolManager(network="10.0.0.0/28", reserved_ips=["10.0.0.1"])
        pool.allocate(holder="peer-1")
        pool.allocate(holder="peer-2")
        before = pool.available_addresses()

        ip = pool.allocate(holder="peer-3")
        pool.release(ip)

        assert pool.available_addresses() == before

    def test_release_is_idempotent(self):
        """
        Given an address that is not held
        When releasing it, repeatedly
        Then nothing should change and no error should be raised
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])
        ip = pool.allocate(holder="peer-1")
        pool.release(ip)
        before = pool.available_addresses()

        assert pool.release(ip) is False
        assert pool.release("10.0.0.50") is False
        assert pool.release("10.0.0.1") is False
        assert pool.available_addresses() == before

    def test_release_by_other_holder_ignored(self):
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])
        ip = pool.allocate(holder="peer-1")

        assert pool.release(ip, holder="peer-2") is False
        assert pool.holder_of(ip) == "peer-1"

        assert pool.release(ip, holder="peer-1") is True
        assert pool.holder_of(ip) is None

    def test_release_outside_network_rejected(self):
        pool = IPPoolManager(network="10.0.0.0/24")

        with pytest.raises(ValueError, match="not in network"):
            pool.release("192.168.0.1")

    def test_reserve_specific_address(self):
        """
        Given an imported assignment
        When reserving it
        Then allocation should skip that address
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        pool.reserve("10.0.0.2", holder="imported")

        assert pool.holder_of("10.0.0.2") == "imported"
        assert pool.allocate(holder="peer-1") == "10.0.0.3"

    def test_reserve_conflict(self):
        """
        Given an address held by one peer
        When another peer reserves it
        Then should raise AddressConflictError naming the holder
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])
        pool.reserve("10.0.0.7", holder="peer-1")

        with pytest.raises(AddressConflictError) as exc_info:
            pool.reserve("10.0.0.7", holder="peer-2")

        assert exc_info.value.address == "10.0.0.7"
        assert exc_info.value.holder == "peer-1"

    def test_reserve_same_holder_is_noop(self):
        pool = IPPoolManager(network="10.0.0.0/24")
        pool.reserve("10.0.0.7", holder="peer-1")

        pool.reserve("10.0.0.7", holder="peer-1")

        assert pool.held_addresses() == {"10.0.0.7": "peer-1"}

    @pytest.mark.parametrize("address", ["10.0.0.0", "10.0.0.1", "10.0.0.255"])
    def test_reserve_reserved_address_rejected(self, address):
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        with pytest.raises(AddressConflictError, match="reserved") as exc_info:
            pool.reserve(address, holder="peer-1")

        assert exc_info.value.holder is None
        assert pool.is_reserved(address)

    def test_ip_pool_exhaustion(self):
        """
        Given small IP pool
        When all IPs allocated
        Then should raise PoolExhaustedError
        """
        # /29 = 8 addresses, 6 hosts, 5 after the gateway
        pool = IPPoolManager(
            network="10.0.0.0/29", reserved_ips=["10.0.0.1"], network_id="net-small"
        )

        for i in range(5):
            pool.allocate(holder=f"peer-{i}")

        with pytest.raises(PoolExhaustedError) as exc_info:
            pool.allocate(holder="peer-overflow")

        assert exc_info.value.network_id == "net-small"
        assert exc_info.value.pool_range == "10.0.0.0/29"
        assert exc_info.value.allocated_count == 5
        assert "Expand the network range" in str(exc_info.value)

    def test_single_usable_address(self):
        pool = IPPoolManager(network="10.0.0.0/30", reserved_ips=["10.0.0.1"])

        assert pool.allocate(holder="peer-1") == "10.0.0.2"
        with pytest.raises(PoolExhaustedError):
            pool.allocate(holder="peer-2")

    def test_next_fit_when_reuse_disabled(self):
        """
        Given reuse of released addresses disabled
        When an address is released
        Then it should only come back after the rest of the range is used
        """
        pool = IPPoolManager(
            network="10.0.0.0/29", reserved_ips=["10.0.0.1"], reuse_released=False
        )
        first = pool.allocate(holder="peer-1")
        pool.allocate(holder="peer-2")
        pool.release(first)

        assert pool.allocate(holder="peer-3") == "10.0.0.4"
        assert pool.allocate(holder="peer-4") == "10.0.0.5"
        assert pool.allocate(holder="peer-5") == "10.0.0.6"
        # wraps around to the released address
        assert pool.allocate(holder="peer-6") == first

        with pytest.raises(PoolExhaustedError):
            pool.allocate(holder="peer-7")

    def test_pool_size_limit(self):
        """
        Given a range larger than the pool limit
        When creating the pool
        Then should raise NetworkTooLargeError from the provisioning family
        """
        with pytest.raises(NetworkTooLargeError, match="pool limit") as exc_info:
            IPPoolManager(network="10.0.0.0/8", max_pool_size=65536)

        assert isinstance(exc_info.value, ProvisioningError)
        assert exc_info.value.size == 2 ** 24
        assert exc_info.value.max_pool_size == 65536

    def test_accessors_wait_for_pool_lock(self):
        """
        Given another thread holding the pool lock
        When reading counts and reservations
        Then the reads should block until the lock is released
        """
        pool = IPPoolManager(network="10.0.0.0/29", reserved_ips=["10.0.0.1"])
        results = []

        def read():
            results.append((
                pool.reserved_count(),
                pool.available_count(),
                pool.is_reserved("10.0.0.1"),
                pool.reserved_addresses(),
            ))

        with pool._lock:
            reader = threading.Thread(target=read)
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()
            assert results == []

        reader.join()
        assert results == [(3, 5, True, ["10.0.0.0", "10.0.0.1", "10.0.0.7"])]

    def test_invalid_cidr(self):
        with pytest.raises(ValueError, match="Invalid network CIDR"):
            IPPoolManager(network="10.0.0.0/33")

    def test_reserved_ip_outside_network(self):
        with pytest.raises(ValueError, match="not in network"):
            IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.1.1"])

    def test_get_pool_stats(self):
        """
        Given IP pool with allocations
        When getting stats
        Then should return correct statistics
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])

        for i in range(10):
            pool.allocate(holder=f"peer-{i}")

        stats = pool.get_pool_stats()

        assert stats.total_addresses == 254  # 256 - 2 (network/broadcast)
        assert stats.reserved_addresses == 1
        assert stats.allocated_addresses == 10
        assert stats.available_addresses == 243  # 254 - 1 - 10
        assert stats.utilization_percent == 3

    def test_thread_safety(self):
        """
        Given concurrent allocations
        When multiple threads allocate
        Then should not allocate duplicate IPs
        """
        pool = IPPoolManager(network="10.0.0.0/24", reserved_ips=["10.0.0.1"])
        allocated_ips = []
        lock = threading.Lock()
        barrier = threading.Barrier(50)

        def allocate(peer_id):
            barrier.wait()
            ip = pool.allocate(holder=peer_id)
            with lock:
                allocated_ips.append(ip)

        threads = [
            threading.Thread(target=allocate, args=(f"peer-{i}",)) for i in range(50)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allocated_ips) == 50
        assert len(set(allocated_ips)) == 50
        # lowest-available policy: exactly .2 through .51 were handed out
        expected = {str(ipaddress.IPv4Address("10.0.0.2") + i) for i in range(50)}
        assert set(allocated_ips) == expected
        assert_pool_invariants(pool, ["10.0.0.0", "10.0.0.1", "10.0.0.255"])


class TestPoolFromNetwork:
    """Pools derived fresh from network records and peers"""

    def test_active_peers_reserved_revoked_ignored(self, network, peer):
        revoked = peer.model_copy(
            update={"id": "peer-old", "address": "10.0.0.3", "status": PeerStatus.REVOKED}
        )

        pool = IPPoolManager.for_network(network, [peer, revoked])

        assert pool.held_addresses() == {"10.0.0.2": "peer-1"}
        assert pool.allocate(holder="peer-new") == "10.0.0.3"

    def test_duplicate_active_assignment_conflicts(self, network, peer):
        twin = peer.model_copy(update={"id": "peer-twin"})

        with pytest.raises(AddressConflictError):
            IPPoolManager.for_network(network, [peer, twin])

    def test_gateway_reserved(self, network):
        pool = IPPoolManager.for_network(network)

        assert pool.is_reserved("10.0.0.1")
        assert pool.network_id == network.id


class TestAddressAllocator:
    """Per-network pool registry"""

    def test_networks_have_independent_pools(self, network, server_public_key):
        """
        Given two networks with the same range
        When allocating in both
        Then each should hand out its own lowest address
        """
        other = Network(
            id="net-2",
            name="branch",
            cidr="10.0.0.0/24",
            endpoint_host="branch.example.com",
            gateway="10.0.0.1",
            server_public_key=server_public_key,
        )
        allocator = AddressAllocator()

        assert allocator.allocate(network, holder="a") == "10.0.0.2"
        assert allocator.allocate(other, holder="b") == "10.0.0.2"
        assert allocator.pool_for(network) is not allocator.pool_for(other)

    def test_release_and_reserve_route_to_network_pool(self, network):
        allocator = AddressAllocator()
        ip = allocator.allocate(network, holder="a")

        assert allocator.release(network, ip, holder="a") is True
        allocator.reserve(network, ip, holder="b")

        assert allocator.pool_for(network).holder_of(ip) == "b"
        assert allocator.get_pool_stats(network).allocated_addresses == 1

    def test_load_replaces_pool(self, network, peer):
        allocator = AddressAllocator()
        allocator.allocate(network, holder="stale")

        pool = allocator.load(network, [peer])

        assert allocator.pool_for(network) is pool
        assert pool.held_addresses() == {"10.0.0.2": "peer-1"}

    def test_reuse_setting_propagates(self, network):
        allocator = AddressAllocator(reuse_released=False)

        assert allocator.pool_for(network).reuse_released is False
