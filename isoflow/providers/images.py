"""Base image provider.

Hands each endpoint a bootable image reference. VMs get a qcow2 overlay
backed by the shared base image so endpoints never write to it;
containers share one image tag.
"""

from __future__ import annotations

import logging
from pathlib import Path

from isoflow.config import settings
from isoflow.errors import EndpointError
from isoflow.models import BackendKind
from isoflow.network.cmd import CommandRunner, run_cmd

logger = logging.getLogger(__name__)


class ImageProvider:
    """Prepares and releases per-endpoint images."""

    def __init__(self, workspace: str | Path | None = None, run: CommandRunner | None = None):
        self.workspace = Path(workspace or settings.workspace_path)
        self._run = run or run_cmd

    def disk_path(self, name: str) -> Path:
        return self.workspace / f"{name}.qcow2"

    async def prepare(self, kind: BackendKind, name: str) -> str:
        """Image reference for a new endpoint."""
        if kind == BackendKind.CONTAINER:
            return settings.container_image

        base = Path(settings.vm_base_image)
        if not base.exists():
            raise EndpointError(f"Base image {base} not found", resource=name)

        self.workspace.mkdir(parents=True, exist_ok=True)
        disk = self.disk_path(name)
        if disk.exists():
            disk.unlink()
        code, _, stderr = await self._run([
            "qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base), str(disk),
        ])
        if code != 0:
            raise EndpointError(f"Failed to create overlay disk for {name}: {stderr.strip()}", resource=name)
        logger.debug(f"Created overlay disk {disk} backed by {base}")
        return str(disk)

    def release(self, kind: BackendKind, name: str) -> None:
        """Delete per-endpoint image artefacts; absent files are fine."""
        if kind == BackendKind.CONTAINER:
            return
        disk = self.disk_path(name)
        if disk.exists():
            disk.unlink()
            logger.debug(f"Removed overlay disk {disk}")
