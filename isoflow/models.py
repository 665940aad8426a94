"""Core data model shared by the segmenter, registry, flow layer and orchestrator."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum

# Linux IFNAMSIZ minus the trailing NUL
MAX_IFNAME_LEN = 15


class BackendKind(str, Enum):
    """Endpoint backend kinds."""
    VM = "vm"
    CONTAINER = "container"


def segment_name(physical: str, vlan_id: int) -> str:
    """Deterministic VLAN sub-interface name for (physical, vlan_id).

    Uses the conventional ``<parent>.<vlan>`` form when it fits, otherwise
    a hashed form so long parent names (e.g. ``enx001122334455``) still map
    to one stable name.
    """
    name = f"{physical}.{vlan_id}"
    if len(name) <= MAX_IFNAME_LEN:
        return name
    digest = hashlib.sha1(physical.encode()).hexdigest()[:6]
    return f"vl{vlan_id}-{digest}"


@dataclass(frozen=True)
class UplinkSegment:
    """A tagged sub-interface carrying one VLAN over the physical uplink."""

    physical: str  # e.g. "ens20"
    vlan_id: int  # 1-4094

    @property
    def name(self) -> str:
        return segment_name(self.physical, self.vlan_id)


@dataclass(frozen=True)
class Attachment:
    """Where an endpoint plugs into the software switch."""

    port_name: str  # OVS port (libvirt target dev or host-side veth)
    mac: str  # endpoint's own MAC, lower case


@dataclass(frozen=True)
class Endpoint:
    """A VM or container under management."""

    name: str
    kind: BackendKind
    ordinal: int | None = None
    running: bool = True
    attachment: Attachment | None = None
    ip: str | None = None

    @property
    def port_name(self) -> str | None:
        return self.attachment.port_name if self.attachment else None

    @property
    def mac(self) -> str | None:
        return self.attachment.mac if self.attachment else None


@dataclass(frozen=True)
class GuestNetworkConfig:
    """Static addressing handed to a guest."""

    address: str  # "192.168.10.10"
    prefix_len: int  # 24
    gateway: str
    dns_servers: tuple[str, ...] = ()

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix_len}"


@dataclass
class AttachmentSpec:
    """Network attachment requested from a backend at create time."""

    bridge: str
    guest: GuestNetworkConfig
    mac: str | None = None  # None lets the backend assign one
    metadata: dict[str, str] = field(default_factory=dict)


def endpoint_name(prefix: str, ordinal: int) -> str:
    """Endpoint name derived solely from the ordinal."""
    return f"{prefix}{ordinal}"


def ordinal_from_name(prefix: str, name: str) -> int | None:
    """Inverse of endpoint_name; None for names outside the managed scheme."""
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix):]
    if not suffix.isdigit() or suffix.startswith("0"):
        return None
    return int(suffix)


def synthesize_mac(name: str, scope: str = "") -> str:
    """Deterministic locally administered unicast MAC for an endpoint.

    Used where the backend needs an explicit address (container veths).
    """
    digest = hashlib.sha1(f"{scope}:{name}".encode()).digest()
    return "02:" + ":".join(f"{b:02x}" for b in digest[:5])
