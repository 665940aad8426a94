from __future__ import annotations

import pytest

from isoflow.endpoints import EndpointRegistry
from isoflow.errors import EndpointNotRunningError


@pytest.mark.asyncio
async def test_list_endpoints_reads_live_inventory(backend):
    backend.add_existing("isoflow-vm-1")
    backend.add_existing("isoflow-vm-2", running=False)
    backend.add_existing("isoflow-vm-custom")
    backend.add_existing("other-1")
    registry = EndpointRegistry(backend, "isoflow-vm-", subnet="192.168.10.0/24", offset=9)

    endpoints = {e.name: e for e in await registry.list_endpoints()}

    assert sorted(endpoints) == ["isoflow-vm-1", "isoflow-vm-2", "isoflow-vm-custom"]
    assert endpoints["isoflow-vm-1"].ordinal == 1
    assert endpoints["isoflow-vm-1"].ip == "192.168.10.10"
    assert endpoints["isoflow-vm-2"].running is False
    assert endpoints["isoflow-vm-custom"].ordinal is None
    assert endpoints["isoflow-vm-custom"].ip is None

    # No caching: removal is visible immediately
    await backend.destroy("isoflow-vm-1")
    assert "isoflow-vm-1" not in {e.name for e in await registry.list_endpoints()}


@pytest.mark.asyncio
async def test_list_with_attachments(backend):
    backend.add_existing("isoflow-vm-1")
    backend.add_existing("isoflow-vm-2")
    backend.never_attached = {"isoflow-vm-2"}
    registry = EndpointRegistry(backend, "isoflow-vm-")

    endpoints = {e.name: e for e in await registry.list_endpoints(with_attachments=True)}
    assert endpoints["isoflow-vm-1"].port_name == backend.endpoints["isoflow-vm-1"]["attachment"].port_name
    assert endpoints["isoflow-vm-2"].attachment is None


@pytest.mark.asyncio
async def test_attachment_of_missing_or_stopped(backend):
    backend.add_existing("isoflow-vm-2", running=False)
    registry = EndpointRegistry(backend, "isoflow-vm-")

    with pytest.raises(EndpointNotRunningError):
        await registry.attachment_of("isoflow-vm-1")
    with pytest.raises(EndpointNotRunningError):
        await registry.attachment_of("isoflow-vm-2")


@pytest.mark.asyncio
async def test_ip_outside_current_subnet_is_none(backend):
    backend.add_existing("isoflow-vm-40")
    registry = EndpointRegistry(backend, "isoflow-vm-", subnet="10.0.0.0/28", offset=9)
    (endpoint,) = await registry.list_endpoints()
    assert endpoint.ordinal == 40
    assert endpoint.ip is None
