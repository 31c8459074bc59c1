"""
WireGuard Networking Package

Key generation, document rendering and QR encoding for provisioned peers.
"""
