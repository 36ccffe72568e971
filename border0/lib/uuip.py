"""Conversions between UUIDs and IPv6 addresses (both are 128 bits)."""

import ipaddress
import uuid
from typing import Union


def uuid_to_ipv6(value: uuid.UUID) -> ipaddress.IPv6Address:
    """Return the IPv6 address with the same 16 bytes as the UUID."""
    return ipaddress.IPv6Address(value.bytes)


def ipv6_to_uuid(addr: Union[ipaddress.IPv6Address, str]) -> uuid.UUID:
    """Return the UUID with the same 16 bytes as the IPv6 address.

    Raises:
        ValueError: If the address is not an IPv6 address.
    """
    if isinstance(addr, str):
        addr = ipaddress.ip_address(addr)
    if not isinstance(addr, ipaddress.IPv6Address):
        raise ValueError(f"address is not IPv6: {addr}")
    return uuid.UUID(bytes=addr.packed)
