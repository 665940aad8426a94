"""Libvirt/KVM endpoint backend.

Each VM gets one NIC on the managed OVS bridge. Libvirt assigns the MAC
and the tap device name unless told otherwise; both are read back from
the live domain XML rather than remembered.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from functools import partial

import libvirt

from isoflow import metrics
from isoflow.config import settings
from isoflow.errors import EndpointError, EndpointNotRunningError
from isoflow.models import Attachment, AttachmentSpec, BackendKind
from isoflow.providers.base import EndpointBackend
from isoflow.providers.domain_xml import bridge_attachments, render_domain_xml
from isoflow.providers.guest_config import GuestConfigProvider
from isoflow.providers.images import ImageProvider

logger = logging.getLogger(__name__)


class LibvirtBackend(EndpointBackend):
    """VM endpoints through libvirt-python."""

    kind = BackendKind.VM

    def __init__(
        self,
        uri: str | None = None,
        bridge: str | None = None,
        images: ImageProvider | None = None,
        guest_config: GuestConfigProvider | None = None,
    ):
        self._uri = uri or settings.libvirt_uri
        self.bridge = bridge or settings.ovs_bridge_name
        self.images = images or ImageProvider()
        self.guest_config = guest_config or GuestConfigProvider()
        self._conn: libvirt.virConnect | None = None
        # Libvirt Python bindings are not thread-safe; all conn.* calls
        # go through one dedicated thread.
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="libvirt",
        )

    async def _call(self, func, *args, **kwargs):
        """Run a blocking function on the dedicated libvirt thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args, **kwargs))

    @property
    def conn(self) -> libvirt.virConnect:
        """Lazy-initialize libvirt connection."""
        if self._conn is None or not self._conn.isAlive():
            self._conn = libvirt.open(self._uri)
            if self._conn is None:
                raise EndpointError(f"Failed to connect to libvirt at {self._uri}")
        return self._conn

    def _lookup_sync(self, name: str) -> libvirt.virDomain | None:
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise

    def _define_and_start_sync(self, name: str, xml: str) -> str:
        domain = self._lookup_sync(name)
        if domain is None:
            domain = self.conn.defineXML(xml)
        if not domain.isActive():
            domain.create()
        return domain.UUIDString()

    def _undefine_sync(self, domain: libvirt.virDomain) -> None:
        try:
            domain.undefine()
        except libvirt.libvirtError:
            flags = getattr(libvirt, "VIR_DOMAIN_UNDEFINE_NVRAM", 0)
            if not flags:
                raise
            domain.undefineFlags(flags)

    def _destroy_sync(self, name: str) -> bool:
        domain = self._lookup_sync(name)
        if domain is None:
            return False
        if domain.isActive():
            try:
                domain.destroy()
            except libvirt.libvirtError as e:
                # Domain may have shut down between isActive() and destroy()
                if domain.isActive():
                    raise
                logger.debug(f"Domain {name} stopped before destroy: {e}")
        self._undefine_sync(domain)
        return True

    def _list_sync(self, prefix: str) -> list[str]:
        return sorted(d.name() for d in self.conn.listAllDomains(0) if d.name().startswith(prefix))

    def _running_sync(self, name: str) -> bool:
        domain = self._lookup_sync(name)
        return bool(domain is not None and domain.isActive())

    def _live_xml_sync(self, name: str) -> str | None:
        domain = self._lookup_sync(name)
        if domain is None or not domain.isActive():
            return None
        return domain.XMLDesc(0)

    async def create(self, name: str, image: str, spec: AttachmentSpec) -> str:
        try:
            seed = await self.guest_config.build_seed(name, spec.guest)
            xml = render_domain_xml(
                name, image, str(seed), spec,
                memory_mb=settings.vm_memory_mb, vcpus=settings.vm_vcpus,
            )
            handle = await self._call(self._define_and_start_sync, name, xml)
        except libvirt.libvirtError as e:
            metrics.endpoint_operations.labels(backend=self.name, operation="create", status="error").inc()
            raise EndpointError(f"Failed to define/start domain {name}: {e}", resource=name) from e
        except EndpointError:
            metrics.endpoint_operations.labels(backend=self.name, operation="create", status="error").inc()
            raise
        metrics.endpoint_operations.labels(backend=self.name, operation="create", status="success").inc()
        logger.info(f"Started domain {name} on bridge {spec.bridge} ({spec.guest.cidr})")
        return handle

    async def destroy(self, name: str) -> bool:
        try:
            existed = await self._call(self._destroy_sync, name)
        except libvirt.libvirtError as e:
            metrics.endpoint_operations.labels(backend=self.name, operation="destroy", status="error").inc()
            raise EndpointError(f"Failed to destroy domain {name}: {e}", resource=name) from e
        self.guest_config.release(name)
        self.images.release(self.kind, name)
        if existed:
            metrics.endpoint_operations.labels(backend=self.name, operation="destroy", status="success").inc()
            logger.info(f"Destroyed and undefined domain {name}")
        return existed

    async def list_names(self, prefix: str) -> list[str]:
        try:
            return await self._call(self._list_sync, prefix)
        except libvirt.libvirtError as e:
            raise EndpointError(f"Failed to list domains with prefix {prefix}: {e}", resource=prefix) from e

    async def running(self, name: str) -> bool:
        try:
            return await self._call(self._running_sync, name)
        except libvirt.libvirtError as e:
            raise EndpointError(f"Failed to query domain {name}: {e}", resource=name) from e

    async def attachment_of(self, name: str) -> Attachment:
        try:
            xml = await self._call(self._live_xml_sync, name)
        except libvirt.libvirtError as e:
            raise EndpointError(f"Failed to read domain XML for {name}: {e}", resource=name) from e
        if xml is None:
            raise EndpointNotRunningError(f"Domain {name} is not running", resource=name)
        attachments = bridge_attachments(xml, self.bridge)
        if not attachments:
            raise EndpointNotRunningError(
                f"Domain {name} has no live interface on bridge {self.bridge}", resource=name,
            )
        return attachments[0]

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await self._call(conn.close)
        self._executor.shutdown(wait=False)
