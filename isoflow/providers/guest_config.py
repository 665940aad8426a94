"""Guest network configuration payloads (cloud-init NoCloud)."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

import yaml

from isoflow.config import settings
from isoflow.errors import EndpointError
from isoflow.models import GuestNetworkConfig
from isoflow.network.cmd import CommandRunner, run_cmd

logger = logging.getLogger(__name__)


class GuestConfigProvider:
    """Renders static addressing for a guest and packs it into a seed ISO."""

    def __init__(self, workspace: str | Path | None = None, run: CommandRunner | None = None):
        self.workspace = Path(workspace or settings.workspace_path)
        self._run = run or run_cmd

    def seed_dir(self, name: str) -> Path:
        return self.workspace / f"{name}-cloud-init"

    def seed_path(self, name: str) -> Path:
        return self.workspace / f"{name}-cloud-init.iso"

    def network_config(self, guest: GuestNetworkConfig, interface: str | None = None) -> dict:
        """Netplan v2 network-config."""
        iface = interface or settings.vm_guest_interface
        return {
            "version": 2,
            "ethernets": {
                iface: {
                    "dhcp4": False,
                    "addresses": [guest.cidr],
                    "routes": [{"to": "default", "via": guest.gateway}],
                    "nameservers": {"addresses": list(guest.dns_servers)},
                },
            },
        }

    def user_data(self, name: str) -> str:
        config: dict = {
            "hostname": name,
            "manage_etc_hosts": True,
            "packages": ["qemu-guest-agent"],
            "runcmd": [
                ["systemctl", "enable", "--now", "qemu-guest-agent"],
            ],
        }
        key_path = Path(settings.vm_ssh_pubkey_path).expanduser()
        if key_path.exists():
            config["users"] = [{
                "name": "ubuntu",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [key_path.read_text().strip()],
            }]
        return "#cloud-config\n" + yaml.safe_dump(config, sort_keys=False)

    def meta_data(self, name: str) -> str:
        return yaml.safe_dump({"instance-id": name, "local-hostname": name}, sort_keys=False)

    async def build_seed(self, name: str, guest: GuestNetworkConfig) -> Path:
        """Write user-data/meta-data/network-config and pack them as a cidata ISO."""
        seed_dir = self.seed_dir(name)
        seed_dir.mkdir(parents=True, exist_ok=True)
        files = {
            "user-data": self.user_data(name),
            "meta-data": self.meta_data(name),
            "network-config": yaml.safe_dump(self.network_config(guest), sort_keys=False),
        }
        for filename, content in files.items():
            (seed_dir / filename).write_text(content)

        iso = self.seed_path(name)
        code, _, stderr = await self._run([
            "genisoimage", "-output", str(iso), "-volid", "cidata", "-joliet", "-rock",
            *(str(seed_dir / f) for f in files),
        ])
        if code != 0:
            raise EndpointError(f"Failed to build cloud-init seed for {name}: {stderr.strip()}", resource=name)
        return iso

    def release(self, name: str) -> None:
        seed_dir = self.seed_dir(name)
        if seed_dir.exists():
            shutil.rmtree(seed_dir)
        iso = self.seed_path(name)
        if iso.exists():
            iso.unlink()
