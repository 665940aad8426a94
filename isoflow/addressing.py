"""Deterministic per-endpoint addressing.

``allocate`` is a total function of (subnet, offset, ordinal): the n-th
endpoint gets host index ``offset + n`` and the gateway is always host
index 1. No state is kept between calls.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

from isoflow.errors import InvalidSubnetError, ValidationError

# /31 and /32 leave no room for a gateway plus endpoints
MAX_PREFIX_LEN = 30
GATEWAY_HOST_INDEX = 1


@dataclass(frozen=True)
class AddressAllocation:
    """One endpoint's address within the subnet."""

    ordinal: int
    address: str
    prefix_len: int
    gateway: str

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix_len}"


def parse_subnet(subnet_cidr: str) -> ipaddress.IPv4Network:
    """Parse an IPv4 CIDR such as ``192.168.10.0/24``.

    Raises:
        InvalidSubnetError: malformed CIDR, host bits set, IPv6, or a
            prefix too long to hold a gateway and endpoints.
    """
    if not isinstance(subnet_cidr, str) or "/" not in subnet_cidr:
        raise InvalidSubnetError(
            f"Invalid subnet format: {subnet_cidr!r}. Use CIDR notation (e.g., 192.168.10.0/24).",
            resource=str(subnet_cidr),
        )
    try:
        network = ipaddress.ip_network(subnet_cidr.strip(), strict=True)
    except ValueError as e:
        raise InvalidSubnetError(f"Invalid subnet {subnet_cidr!r}: {e}", resource=subnet_cidr) from e
    if network.version != 4:
        raise InvalidSubnetError(f"Only IPv4 subnets are supported: {subnet_cidr}", resource=subnet_cidr)
    if network.prefixlen > MAX_PREFIX_LEN:
        raise InvalidSubnetError(
            f"Subnet {subnet_cidr} is too small (prefix must be /{MAX_PREFIX_LEN} or shorter)",
            resource=subnet_cidr,
        )
    return network


def allocate(subnet_cidr: str, offset: int, ordinal: int) -> AddressAllocation:
    """Address for ``ordinal`` (1-based) at ``offset`` within the subnet.

    Raises:
        InvalidSubnetError: malformed subnet.
        ValidationError: ordinal < 1, offset < 1, or the resulting host
            index falls outside the usable range.
    """
    network = parse_subnet(subnet_cidr)
    if ordinal < 1:
        raise ValidationError(f"Ordinal must be >= 1, got {ordinal}")
    if offset < GATEWAY_HOST_INDEX:
        # offset 0 would hand the gateway address to ordinal 1
        raise ValidationError(f"Address offset must be >= {GATEWAY_HOST_INDEX}, got {offset}")

    host_index = offset + ordinal
    last_usable = network.num_addresses - 2  # skip broadcast
    if host_index > last_usable:
        raise ValidationError(
            f"Subnet {subnet_cidr} exhausted: ordinal {ordinal} at offset {offset} "
            f"needs host index {host_index}, last usable is {last_usable}",
            resource=subnet_cidr,
        )

    return AddressAllocation(
        ordinal=ordinal,
        address=str(network.network_address + host_index),
        prefix_len=network.prefixlen,
        gateway=str(network.network_address + GATEWAY_HOST_INDEX),
    )


def allocate_range(subnet_cidr: str, offset: int, count: int) -> dict[int, AddressAllocation]:
    """Allocations for ordinals 1..count."""
    return {i: allocate(subnet_cidr, offset, i) for i in range(1, count + 1)}
