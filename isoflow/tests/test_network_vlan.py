from __future__ import annotations

import pytest

from isoflow.errors import InterfaceNotFoundError, InvalidVlanError, SegmentError
from isoflow.models import UplinkSegment, segment_name
from isoflow.network.vlan import UplinkSegmenter, parse_link_macs, validate_vlan_id

from .conftest import UPLINK, UPLINK_MAC


@pytest.mark.parametrize("vlan_id", [0, 4095, -1, "abc", True, 10.5])
def test_validate_vlan_id_rejects(vlan_id):
    with pytest.raises(InvalidVlanError):
        validate_vlan_id(vlan_id)


@pytest.mark.parametrize("vlan_id", [1, 100, 4094])
def test_validate_vlan_id_accepts(vlan_id):
    assert validate_vlan_id(vlan_id) == vlan_id


def test_segment_name_short_and_hashed():
    assert segment_name("ens20", 10) == "ens20.10"
    long_name = segment_name("enx001122334455", 4094)
    assert len(long_name) <= 15
    assert long_name.startswith("vl4094-")
    assert long_name == segment_name("enx001122334455", 4094)
    assert long_name != segment_name("enx001122334466", 4094)


def test_parse_link_macs_skips_stacked_links():
    output = (
        "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN\\    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00\n"
        "2: ens20: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\\    link/ether 52:54:00:AA:BB:CC brd ff:ff:ff:ff:ff:ff\n"
        "5: ens20.10@ens20: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\\    link/ether 52:54:00:aa:bb:cc brd ff:ff:ff:ff:ff:ff\n"
    )
    assert parse_link_macs(output) == [("ens20", "52:54:00:aa:bb:cc")]


@pytest.mark.asyncio
async def test_ensure_creates_then_skips(host):
    segmenter = UplinkSegmenter(run=host)
    segment, created = await segmenter.ensure_with_status(UPLINK, 10)
    assert created
    assert segment == UplinkSegment(UPLINK, 10)
    assert host.links["ens20.10"].vlan_id == 10

    segment, created = await segmenter.ensure_with_status(UPLINK, 10)
    assert not created
    assert sum(1 for c in host.calls if c[:3] == ["ip", "link", "add"]) == 1


@pytest.mark.asyncio
async def test_ensure_rejects_name_held_by_other_vlan(host):
    host.add_link("ens20.10", vlan_id=20, parent=UPLINK)
    with pytest.raises(SegmentError):
        await UplinkSegmenter(run=host).ensure(UPLINK, 10)


@pytest.mark.asyncio
async def test_ensure_requires_parent(host):
    with pytest.raises(InterfaceNotFoundError):
        await UplinkSegmenter(run=host).ensure("eth9", 10)


@pytest.mark.asyncio
async def test_ensure_removes_link_that_fails_to_come_up(host):
    host.fail("ip", "link", "set", "dev", "ens20.10")
    with pytest.raises(SegmentError):
        await UplinkSegmenter(run=host).ensure(UPLINK, 10)
    assert "ens20.10" not in host.links


@pytest.mark.asyncio
async def test_teardown_is_idempotent(host):
    segmenter = UplinkSegmenter(run=host)
    segment = await segmenter.ensure(UPLINK, 10)
    assert await segmenter.teardown(segment) is True
    assert await segmenter.teardown(segment) is False


@pytest.mark.asyncio
async def test_teardown_failure_raises(host):
    segmenter = UplinkSegmenter(run=host)
    segment = await segmenter.ensure(UPLINK, 10)
    host.fail("ip", "link", "delete")
    with pytest.raises(SegmentError):
        await segmenter.teardown(segment)


@pytest.mark.asyncio
async def test_resolve_uplink(host):
    segmenter = UplinkSegmenter(run=host)
    assert await segmenter.resolve_uplink(name="eth7") == "eth7"
    assert await segmenter.resolve_uplink(mac=UPLINK_MAC) == UPLINK
    with pytest.raises(InterfaceNotFoundError):
        await segmenter.resolve_uplink(mac="02:00:00:00:00:01")
    with pytest.raises(InterfaceNotFoundError):
        await segmenter.resolve_uplink()
