"""
WireGuard keypair generation and derivation.

This module provides functionality for:
- Generating X25519 keypairs for WireGuard peers and servers
- Deriving the public key from a private key
- Validating base64 key formats

WireGuard uses Curve25519 for key exchange. Private scalars are clamped the
same way `wg genkey` clamps them, and the public value is the scalar
multiplication of the clamped scalar with the curve base point.
Keys are exchanged in base64 format as per WireGuard conventions.
"""

import base64
import binascii

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from wgprovision.exceptions import CryptoError
from wgprovision.models.wireguard.provisioning import KEY_LENGTH, KeyPair


def clamp_private_key(raw: bytes) -> bytes:
    """
    Apply Curve25519 clamping to a 32 byte private scalar.

    Clears the three low bits, clears the top bit and sets the second
    highest bit.

    Args:
        raw: 32 random bytes

    Returns:
        bytes: The clamped scalar
    """
    if len(raw) != KEY_LENGTH:
        raise CryptoError(
            f"Invalid private key length: expected {KEY_LENGTH} bytes, got {len(raw)}"
        )
    scalar = bytearray(raw)
    scalar[0] &= 248
    scalar[31] &= 127
    scalar[31] |= 64
    return bytes(scalar)


def derive_public_key(private_key: bytes) -> bytes:
    """
    Derive the raw X25519 public key for a raw private scalar.

    Args:
        private_key: 32 byte private scalar

    Returns:
        bytes: 32 byte public value

    Raises:
        CryptoError: If the scalar has the wrong length or cannot be loaded
    """
    if len(private_key) != KEY_LENGTH:
        raise CryptoError(
            f"Invalid private key length: expected {KEY_LENGTH} bytes, got {len(private_key)}"
        )
    try:
        private_key_obj = X25519PrivateKey.from_private_bytes(private_key)
        return private_key_obj.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid private key: {e}")


def generate_keypair() -> KeyPair:
    """
    Generate a new WireGuard keypair using X25519.

    The private scalar comes from the OpenSSL CSPRNG behind `cryptography`;
    nothing is cached between calls.

    Returns:
        KeyPair: Raw 32 byte private and public halves

    Raises:
        CryptoError: If the entropy source or key derivation fails

    Example:
        >>> keypair = generate_keypair()
        >>> len(keypair.private_key_b64)
        44
    """
    try:
        private_key_obj = X25519PrivateKey.generate()
        raw = private_key_obj.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        )
    except Exception as e:
        raise CryptoError(f"Failed to generate private key: {e}")

    private_key = clamp_private_key(raw)
    public_key = derive_public_key(private_key)

    return KeyPair(private_key=private_key, public_key=public_key)


def get_public_key_from_private(private_key: str) -> str:
    """
    Derive the public key from a base64 private key.

    Args:
        private_key: Base64-encoded X25519 private key

    Returns:
        str: Base64-encoded X25519 public key

    Raises:
        CryptoError: If the private key is invalid
    """
    try:
        private_key_bytes = base64.b64decode(private_key, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise CryptoError(f"Invalid private key format: {e}")

    public_key_bytes = derive_public_key(private_key_bytes)
    return base64.b64encode(public_key_bytes).decode('ascii')


def validate_public_key_format(public_key) -> bool:
    """
    Validate that a public key matches the WireGuard base64 format.

    Args:
        public_key: Public key to validate (can be None)

    Returns:
        bool: True if valid, False otherwise
    """
    if public_key is None or not isinstance(public_key, str):
        return False

    if len(public_key) != 44:
        return False

    try:
        return len(base64.b64decode(public_key, validate=True)) == KEY_LENGTH
    except (binascii.Error, ValueError):
        return False


def validate_private_key_format(private_key) -> bool:
    """
    Validate that a private key matches the WireGuard base64 format.

    Args:
        private_key: Private key to validate (can be None)

    Returns:
        bool: True if valid, False otherwise
    """
    if not validate_public_key_format(private_key):
        return False

    try:
        X25519PrivateKey.from_private_bytes(base64.b64decode(private_key))
        return True
    except ValueError:
        return False
