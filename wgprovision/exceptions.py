"""
Provisioning error taxonomy

Every failure raised by the engine derives from ProvisioningError so the
calling layer can map the whole family at one seam. No error is retried
inside the engine; state is left unchanged when any of these is raised.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base exception for provisioning errors"""
    pass


class CryptoError(ProvisioningError):
    """Raised when key generation or public key derivation fails"""
    pass


class PoolExhaustedError(ProvisioningError):
    """Raised when a network has no usable address left"""

    def __init__(self, network_id: str, pool_range: str, allocated_count: int):
        self.network_id = network_id
        self.pool_range = pool_range
        self.allocated_count = allocated_count
        super().__init__(
            f"Address pool exhausted for network {network_id}: "
            f"{allocated_count} addresses allocated from range {pool_range}. "
            f"Expand the network range to provision more peers."
        )


class AddressConflictError(ProvisioningError):
    """Raised when a reservation collides with an address held by another peer"""

    def __init__(self, address: str, holder: Optional[str], message: Optional[str] = None):
        self.address = address
        self.holder = holder
        if message is None:
            if holder is None:
                message = f"Address {address} is reserved and cannot be assigned to a peer"
            else:
                message = f"Address {address} is already held by peer {holder}"
        super().__init__(message)


class NetworkTooLargeError(ProvisioningError, ValueError):
    """Raised when a network range is larger than an address pool can track"""

    def __init__(self, pool_range: str, size: int, max_pool_size: int):
        self.pool_range = pool_range
        self.size = size
        self.max_pool_size = max_pool_size
        super().__init__(
            f"Network {pool_range} spans {size} addresses, "
            f"more than the pool limit of {max_pool_size}"
        )


class ConfigError(ProvisioningError):
    """Raised when a document cannot be rendered because a required field is missing"""
    pass


class EncodingError(ProvisioningError):
    """Raised when a client document does not fit in a QR symbol"""

    def __init__(self, payload_size: int, error_correction: str):
        self.payload_size = payload_size
        self.error_correction = error_correction
        super().__init__(
            f"Client configuration of {payload_size} bytes exceeds QR capacity "
            f"at error correction level {error_correction}"
        )


class NetworkNotFoundError(ProvisioningError):
    """Raised when a network id is not registered with the engine"""
    pass


class PeerNotFoundError(ProvisioningError):
    """Raised when a peer id is not known to the engine"""
    pass


class InvalidTransitionError(ProvisioningError):
    """Raised on an illegal peer status transition"""
    pass
