"""VLAN sub-interface management for the shared uplink.

Creates and removes the 802.1Q sub-interface that carries one VLAN over
the physical uplink, and resolves an uplink given only by MAC address.
"""

from __future__ import annotations

import logging
import re

from isoflow.errors import InterfaceNotFoundError, InvalidVlanError, SegmentError
from isoflow.models import UplinkSegment
from isoflow.network.cmd import CommandRunner, ip_link_exists, run_cmd
from isoflow.reconcile import reconcile

logger = logging.getLogger(__name__)

VLAN_MIN = 1
VLAN_MAX = 4094

# "2: ens20: <BROADCAST,...> mtu 1500 ... link/ether 52:54:00:aa:bb:cc brd ..."
_LINK_LINE_RE = re.compile(r"^\d+:\s+(?P<name>[^:]+):.*?link/ether\s+(?P<mac>[0-9a-fA-F:]{17})")
# "... vlan protocol 802.1Q id 10 ..."
_VLAN_ID_RE = re.compile(r"\bvlan protocol \S+ id (?P<vid>\d+)")


def validate_vlan_id(vlan_id: int) -> int:
    """Return vlan_id if it is a usable 802.1Q VLAN ID."""
    if isinstance(vlan_id, bool) or not isinstance(vlan_id, int) or not VLAN_MIN <= vlan_id <= VLAN_MAX:
        raise InvalidVlanError(
            f"Invalid VLAN ID: {vlan_id}. VLAN ID must be between {VLAN_MIN} and {VLAN_MAX}.",
            resource=str(vlan_id),
        )
    return vlan_id


def parse_link_macs(ip_link_output: str) -> list[tuple[str, str]]:
    """Parse ``ip -o link show`` into (name, mac) pairs.

    Stacked links (``vlan.10@ens20``) are skipped: only the physical
    interface should match an uplink MAC.
    """
    links = []
    for line in ip_link_output.splitlines():
        m = _LINK_LINE_RE.match(line.strip())
        if not m:
            continue
        name = m.group("name").strip()
        if "@" in name:
            continue
        links.append((name, m.group("mac").lower()))
    return links


class UplinkSegmenter:
    """Ensures and removes the VLAN segment on a physical uplink."""

    def __init__(self, run: CommandRunner | None = None):
        self._run = run or run_cmd

    async def _ip(self, *args: str) -> tuple[int, str, str]:
        return await self._run(["ip", *args])

    async def interface_exists(self, name: str) -> bool:
        return await ip_link_exists(name, run=self._run)

    async def resolve_uplink(self, name: str | None = None, mac: str | None = None) -> str:
        """Resolve the physical uplink interface name.

        A name given directly wins; otherwise the host interface whose MAC
        matches is used.

        Raises:
            InterfaceNotFoundError: no name given and no interface carries the MAC.
        """
        if name:
            return name
        if not mac:
            raise InterfaceNotFoundError("No uplink interface name or MAC supplied")

        wanted = mac.lower()
        code, stdout, stderr = await self._ip("-o", "link", "show")
        if code != 0:
            raise InterfaceNotFoundError(f"Failed to list host interfaces: {stderr.strip()}", resource=mac)
        for link_name, link_mac in parse_link_macs(stdout):
            if link_mac == wanted:
                logger.info(f"Using physical interface {link_name} for MAC {wanted}")
                return link_name
        raise InterfaceNotFoundError(f"No physical interface found with MAC address {wanted}", resource=mac)

    async def _observed_vlan_id(self, name: str) -> int | None:
        """VLAN ID of an existing link, or None if it is not a VLAN link."""
        code, stdout, _ = await self._ip("-d", "-o", "link", "show", name)
        if code != 0:
            return None
        m = _VLAN_ID_RE.search(stdout)
        return int(m.group("vid")) if m else None

    async def ensure_with_status(self, physical: str, vlan_id: int) -> tuple[UplinkSegment, bool]:
        """Ensure the segment exists; returns (segment, created_by_this_call)."""
        validate_vlan_id(vlan_id)
        segment = UplinkSegment(physical=physical, vlan_id=vlan_id)
        name = segment.name

        observed = {}
        if await self.interface_exists(name):
            observed[name] = await self._observed_vlan_id(name)
        plan = reconcile(
            {name: vlan_id},
            observed,
            differs=lambda want, have: have != want,
        )

        if plan.update:
            raise SegmentError(
                f"Interface {name} exists but is not a VLAN {vlan_id} sub-interface (found vlan {observed[name]})",
                resource=name,
            )
        if plan.keep:
            logger.info(f"VLAN interface {name} already exists, skipping creation")
            return segment, False

        if not await self.interface_exists(physical):
            raise InterfaceNotFoundError(f"Parent interface {physical} does not exist", resource=physical)

        code, _, stderr = await self._ip("link", "set", "dev", physical, "up")
        if code != 0:
            raise SegmentError(f"Failed to bring up uplink {physical}: {stderr.strip()}", resource=physical)

        # ip link add link ens20 name ens20.10 type vlan id 10
        code, _, stderr = await self._ip(
            "link", "add", "link", physical, "name", name, "type", "vlan", "id", str(vlan_id),
        )
        if code != 0:
            raise SegmentError(f"Failed to create VLAN interface {name}: {stderr.strip()}", resource=name)

        code, _, stderr = await self._ip("link", "set", "dev", name, "up")
        if code != 0:
            # Created but not up - remove it so no half-built segment survives
            await self._ip("link", "delete", name)
            raise SegmentError(f"Failed to bring up VLAN interface {name}: {stderr.strip()}", resource=name)

        logger.info(f"Created VLAN interface {name} on {physical} (vlan {vlan_id})")
        return segment, True

    async def ensure(self, physical: str, vlan_id: int) -> UplinkSegment:
        """Ensure a VLAN sub-interface exists on the uplink (idempotent)."""
        segment, _ = await self.ensure_with_status(physical, vlan_id)
        return segment

    async def exists(self, segment: UplinkSegment) -> bool:
        return await self.interface_exists(segment.name)

    async def teardown(self, segment: UplinkSegment) -> bool:
        """Remove the segment.

        Returns:
            True if an interface was deleted, False if it was already absent.

        Raises:
            SegmentError: the interface exists but could not be deleted.
        """
        name = segment.name
        if not await self.interface_exists(name):
            logger.debug(f"VLAN interface {name} does not exist")
            return False

        code, _, stderr = await self._ip("link", "delete", name)
        if code != 0:
            raise SegmentError(f"Failed to delete VLAN interface {name}: {stderr.strip()}", resource=name)

        logger.info(f"Deleted VLAN interface {name}")
        return True
