"""Libvirt domain XML for endpoint VMs.

Rendering and parsing only; nothing here talks to libvirt.
"""

from __future__ import annotations

import uuid
import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape as xml_escape

from isoflow.models import Attachment, AttachmentSpec

METADATA_NS = "http://isoflow.dev/libvirt/1"


def _esc(value: str) -> str:
    """Escape text for element content and single- or double-quoted attributes."""
    return xml_escape(value, {"'": "&apos;", "\"": "&quot;"})


def render_domain_xml(
    name: str,
    disk_path: str,
    seed_iso: str | None,
    spec: AttachmentSpec,
    memory_mb: int,
    vcpus: int,
) -> str:
    """Domain XML for one endpoint VM."""
    cdrom_xml = ""
    if seed_iso:
        cdrom_xml = f'''
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='{_esc(seed_iso)}'/>
      <target dev='hda' bus='ide'/>
      <readonly/>
    </disk>'''

    mac_xml = f"\n      <mac address='{_esc(spec.mac)}'/>" if spec.mac else ""

    metadata_items = "".join(
        f"\n      <isoflow:{_esc(k)}>{_esc(v)}</isoflow:{_esc(k)}>"
        for k, v in sorted(spec.metadata.items())
    )

    return f'''<domain type='kvm'>
  <name>{_esc(name)}</name>
  <uuid>{uuid.uuid4()}</uuid>
  <metadata>
    <isoflow:endpoint xmlns:isoflow="{METADATA_NS}">
      <isoflow:address>{_esc(spec.guest.cidr)}</isoflow:address>{metadata_items}
    </isoflow:endpoint>
  </metadata>
  <memory unit='MiB'>{int(memory_mb)}</memory>
  <vcpu placement='static'>{int(vcpus)}</vcpu>
  <os>
    <type arch='x86_64' machine='pc'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='{_esc(disk_path)}'/>
      <target dev='vda' bus='virtio'/>
    </disk>{cdrom_xml}
    <interface type='bridge'>{mac_xml}
      <source bridge='{_esc(spec.bridge)}'/>
      <virtualport type='openvswitch'/>
      <model type='virtio'/>
    </interface>
    <serial type='pty'>
      <target port='0'/>
    </serial>
    <console type='pty'>
      <target type='serial' port='0'/>
    </console>
    <channel type='unix'>
      <target type='virtio' name='org.qemu.guest_agent.0'/>
    </channel>
  </devices>
</domain>'''


def bridge_attachments(domain_xml: str, bridge: str) -> list[Attachment]:
    """Interfaces of a domain bound to ``bridge`` that have a live tap device."""
    root = ET.fromstring(domain_xml)
    found = []
    for iface in root.findall("./devices/interface"):
        source = iface.find("source")
        if source is None or source.get("bridge") != bridge:
            continue
        target = iface.find("target")
        mac = iface.find("mac")
        if target is None or not target.get("dev") or mac is None or not mac.get("address"):
            continue
        found.append(Attachment(port_name=target.get("dev"), mac=mac.get("address").lower()))
    return found
