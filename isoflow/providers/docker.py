"""Docker container endpoint backend.

Containers start with ``network_mode=none``; their single interface is a
veth pair whose host end is an OVS port on the managed bridge and whose
peer becomes ``eth0`` inside the container namespace. Veth names and the
container MAC are derived from the container name, so a later run can
find them again without any saved state.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re

import docker
from docker.errors import DockerException, NotFound

from isoflow import metrics
from isoflow.config import settings
from isoflow.errors import EndpointError, EndpointNotRunningError
from isoflow.models import Attachment, AttachmentSpec, BackendKind, synthesize_mac
from isoflow.network.cmd import CommandRunner, ip_link_exists, ovs_vsctl, run_cmd
from isoflow.providers.base import EndpointBackend

logger = logging.getLogger(__name__)

CONTAINER_IFACE = "eth0"
MANAGED_LABEL = "isoflow.managed"

_ETHER_RE = re.compile(r"link/ether\s+(?P<mac>[0-9a-fA-F:]{17})")


def veth_names(container_name: str) -> tuple[str, str]:
    """Deterministic (host, container) veth names, max 15 chars each."""
    digest = hashlib.sha1(container_name.encode()).hexdigest()[:10]
    return f"vh{digest}", f"vc{digest}"


class DockerBackend(EndpointBackend):
    """Container endpoints through the Docker SDK."""

    kind = BackendKind.CONTAINER

    def __init__(
        self,
        bridge: str | None = None,
        client: docker.DockerClient | None = None,
        run: CommandRunner | None = None,
    ):
        self.bridge = bridge or settings.ovs_bridge_name
        self._docker = client
        self._run = run or run_cmd

    @property
    def docker(self) -> docker.DockerClient:
        """Lazy-initialize Docker client."""
        if self._docker is None:
            self._docker = docker.DockerClient(
                base_url=settings.docker_socket,
                timeout=settings.docker_client_timeout,
            )
        return self._docker

    async def _get(self, name: str):
        try:
            return await asyncio.to_thread(self.docker.containers.get, name)
        except NotFound:
            return None

    async def _nsenter(self, pid: int, *args: str) -> tuple[int, str, str]:
        return await self._run(["nsenter", "-t", str(pid), "-n", *args])

    async def _remove_host_veth(self, host_veth: str) -> None:
        await ovs_vsctl("--if-exists", "del-port", self.bridge, host_veth, run=self._run)
        if await ip_link_exists(host_veth, run=self._run):
            await self._run(["ip", "link", "delete", host_veth])

    def _check(self, result: tuple[int, str, str], what: str, name: str) -> None:
        code, _, stderr = result
        if code != 0:
            raise EndpointError(f"{what} failed for {name}: {stderr.strip()}", resource=name)

    async def _plumb(self, name: str, pid: int, spec: AttachmentSpec) -> None:
        """Create the veth pair, bridge the host end and configure eth0 in the namespace."""
        host_veth, cont_veth = veth_names(name)
        mac = spec.mac or synthesize_mac(name)

        await self._remove_host_veth(host_veth)
        self._check(
            await self._run(["ip", "link", "add", host_veth, "type", "veth", "peer", "name", cont_veth]),
            "veth create", name,
        )
        self._check(
            await ovs_vsctl("--may-exist", "add-port", self.bridge, host_veth, run=self._run),
            f"add-port to {self.bridge}", name,
        )
        self._check(await self._run(["ip", "link", "set", host_veth, "up"]), "host veth up", name)
        self._check(
            await self._run(["ip", "link", "set", cont_veth, "netns", str(pid)]),
            "move veth into namespace", name,
        )
        self._check(
            await self._nsenter(pid, "ip", "link", "set", cont_veth, "name", CONTAINER_IFACE),
            "rename veth", name,
        )
        self._check(
            await self._nsenter(pid, "ip", "link", "set", CONTAINER_IFACE, "address", mac),
            "set MAC", name,
        )
        self._check(
            await self._nsenter(pid, "ip", "addr", "add", spec.guest.cidr, "dev", CONTAINER_IFACE),
            "assign address", name,
        )
        self._check(
            await self._nsenter(pid, "ip", "link", "set", CONTAINER_IFACE, "up"),
            "bring up eth0", name,
        )
        self._check(
            await self._nsenter(pid, "ip", "route", "add", "default", "via", spec.guest.gateway),
            "default route", name,
        )
        logger.debug(f"Plumbed {host_veth} <-> {name}:{CONTAINER_IFACE} ({mac}, {spec.guest.cidr})")

    async def create(self, name: str, image: str, spec: AttachmentSpec) -> str:
        try:
            container = await self._get(name)
            if container is not None and container.status != "running":
                await asyncio.to_thread(container.remove, force=True)
                container = None
            if container is None:
                container = await asyncio.to_thread(
                    self.docker.containers.run,
                    image,
                    command=["sleep", "infinity"],
                    name=name,
                    detach=True,
                    network_mode="none",
                    cap_add=["NET_ADMIN"],
                    labels={MANAGED_LABEL: "true", **spec.metadata},
                )
            await asyncio.to_thread(container.reload)
            pid = container.attrs["State"]["Pid"]
            if not pid:
                raise EndpointError(f"Failed to retrieve PID for container {name}", resource=name)
            await self._plumb(name, pid, spec)
        except DockerException as e:
            metrics.endpoint_operations.labels(backend=self.name, operation="create", status="error").inc()
            raise EndpointError(f"Failed to start container {name}: {e}", resource=name) from e
        except EndpointError:
            metrics.endpoint_operations.labels(backend=self.name, operation="create", status="error").inc()
            raise

        metrics.endpoint_operations.labels(backend=self.name, operation="create", status="success").inc()
        logger.info(f"Started container {name} on bridge {spec.bridge} ({spec.guest.cidr})")
        return container.id

    async def destroy(self, name: str) -> bool:
        host_veth, _ = veth_names(name)
        try:
            container = await self._get(name)
            if container is not None:
                await asyncio.to_thread(container.remove, force=True)
        except DockerException as e:
            metrics.endpoint_operations.labels(backend=self.name, operation="destroy", status="error").inc()
            raise EndpointError(f"Failed to remove container {name}: {e}", resource=name) from e

        # Namespace teardown removes the veth pair; the OVS port record stays behind
        await self._remove_host_veth(host_veth)
        if container is None:
            return False
        metrics.endpoint_operations.labels(backend=self.name, operation="destroy", status="success").inc()
        logger.info(f"Removed container {name}")
        return True

    async def list_names(self, prefix: str) -> list[str]:
        try:
            containers = await asyncio.to_thread(
                self.docker.containers.list, all=True, filters={"name": f"^/?{re.escape(prefix)}"},
            )
        except DockerException as e:
            raise EndpointError(f"Failed to list containers with prefix {prefix}: {e}", resource=prefix) from e
        return sorted(c.name for c in containers if c.name.startswith(prefix))

    async def running(self, name: str) -> bool:
        try:
            container = await self._get(name)
        except DockerException as e:
            raise EndpointError(f"Failed to query container {name}: {e}", resource=name) from e
        return container is not None and container.status == "running"

    async def attachment_of(self, name: str) -> Attachment:
        try:
            container = await self._get(name)
        except DockerException as e:
            raise EndpointError(f"Failed to query container {name}: {e}", resource=name) from e
        if container is None or container.status != "running":
            raise EndpointNotRunningError(f"Container {name} is not running", resource=name)

        pid = container.attrs.get("State", {}).get("Pid")
        host_veth, _ = veth_names(name)
        if not pid or not await ip_link_exists(host_veth, run=self._run):
            raise EndpointNotRunningError(f"Container {name} has no host veth {host_veth} yet", resource=name)

        code, stdout, _ = await self._nsenter(pid, "ip", "-o", "link", "show", CONTAINER_IFACE)
        m = _ETHER_RE.search(stdout) if code == 0 else None
        if not m:
            raise EndpointNotRunningError(f"Container {name} has no {CONTAINER_IFACE} yet", resource=name)
        return Attachment(port_name=host_veth, mac=m.group("mac").lower())

    async def close(self) -> None:
        if self._docker is not None:
            client, self._docker = self._docker, None
            await asyncio.to_thread(client.close)
