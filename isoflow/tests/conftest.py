from __future__ import annotations

import hashlib
from dataclasses import dataclass

import pytest

from isoflow.config import settings
from isoflow.errors import EndpointError, EndpointNotRunningError
from isoflow.lifecycle import LifecycleOrchestrator
from isoflow.models import Attachment, AttachmentSpec, BackendKind, synthesize_mac
from isoflow.network.flows import FlowRule, parse_flow_line
from isoflow.network.vlan import UplinkSegmenter
from isoflow.providers.base import EndpointBackend
from isoflow.schemas import ProvisionRequest

UPLINK = "ens20"
UPLINK_MAC = "52:54:00:aa:bb:cc"


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep lock files and artefacts under tmp_path and make retries instant."""
    monkeypatch.setattr(settings, "lock_dir", str(tmp_path / "locks"))
    monkeypatch.setattr(settings, "workspace_path", str(tmp_path / "workspace"))
    monkeypatch.setattr(settings, "attachment_backoff", 0.0)
    monkeypatch.setattr(settings, "attachment_backoff_max", 0.0)
    monkeypatch.setattr(settings, "flow_retry_delay", 0.0)
    yield


@dataclass
class FakeLink:
    name: str
    mac: str
    vlan_id: int | None = None
    parent: str | None = None
    up: bool = False


def _mac_for(name: str) -> str:
    digest = hashlib.sha1(name.encode()).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


class FakeHost:
    """In-memory stand-in for ``ip``, ``ovs-vsctl`` and ``ovs-ofctl``.

    Usable anywhere a CommandRunner is accepted. ``fail(prefix)`` makes the
    next matching command(s) return an error.
    """

    def __init__(self):
        self.links: dict[str, FakeLink] = {}
        self.bridges: dict[str, set[str]] = {}
        self.flows: dict[str, list[FlowRule]] = {}
        self.calls: list[list[str]] = []
        self._failures: list[list] = []

    def add_link(self, name: str, mac: str | None = None, **kwargs) -> FakeLink:
        link = FakeLink(name=name, mac=mac or _mac_for(name), **kwargs)
        self.links[name] = link
        return link

    def fail(self, *prefix: str, times: int = 1, code: int = 1, stderr: str = "injected failure") -> None:
        self._failures.append([list(prefix), times, code, stderr])

    def rules(self, bridge: str | None = None) -> list[FlowRule]:
        return list(self.flows.get(bridge or settings.ovs_bridge_name, []))

    def commands(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]

    async def __call__(self, cmd: list[str]) -> tuple[int, str, str]:
        self.calls.append(list(cmd))
        for failure in self._failures:
            prefix, times, code, stderr = failure
            if times > 0 and cmd[: len(prefix)] == prefix:
                failure[1] -= 1
                return code, "", stderr
        if cmd[0] == "ip":
            return self._ip(cmd[1:])
        if cmd[0] == "ovs-vsctl":
            return self._vsctl(cmd[1:])
        if cmd[0] == "ovs-ofctl":
            return self._ofctl(cmd[1:])
        return 127, "", f"{cmd[0]}: not found"

    # --- ip ---

    def _link_line(self, index: int, link: FakeLink, detail: bool = False) -> str:
        name = f"{link.name}@{link.parent}" if link.parent else link.name
        state = "UP" if link.up else "DOWN"
        line = (
            f"{index}: {name}: <BROADCAST,MULTICAST,{state}> mtu 1500 qdisc noqueue state {state} "
            f"mode DEFAULT group default qlen 1000\\    link/ether {link.mac} brd ff:ff:ff:ff:ff:ff"
        )
        if detail and link.vlan_id is not None:
            line += f" promiscuity 0 \\    vlan protocol 802.1Q id {link.vlan_id} <REORDER_HDR>"
        return line

    def _ip(self, args: list[str]) -> tuple[int, str, str]:
        if args == ["-o", "link", "show"]:
            lines = [self._link_line(i, link) for i, link in enumerate(self.links.values(), start=2)]
            return 0, "\n".join(lines) + "\n", ""
        if args[:4] == ["-d", "-o", "link", "show"]:
            link = self.links.get(args[4])
            if link is None:
                return 1, "", f'Device "{args[4]}" does not exist.'
            return 0, self._link_line(2, link, detail=True) + "\n", ""
        if args[:2] == ["link", "show"]:
            name = args[2]
            if name in self.links or name in self.bridges:
                return 0, f"2: {name}: <BROADCAST,MULTICAST,UP>\n", ""
            return 1, "", f'Device "{name}" does not exist.'
        if args[:2] == ["link", "add"]:
            # ip link add link PHYS name NAME type vlan id VID
            parent, name, vid = args[3], args[5], int(args[9])
            if name in self.links:
                return 2, "", "RTNETLINK answers: File exists"
            if parent not in self.links:
                return 1, "", f'Device "{parent}" does not exist.'
            self.add_link(name, mac=self.links[parent].mac, vlan_id=vid, parent=parent)
            return 0, "", ""
        if args[:3] == ["link", "set", "dev"]:
            name = args[3]
            if name in self.bridges:
                return 0, "", ""
            if name not in self.links:
                return 1, "", f'Cannot find device "{name}"'
            self.links[name].up = args[4] == "up"
            return 0, "", ""
        if args[:2] == ["link", "delete"]:
            if self.links.pop(args[2], None) is None:
                return 1, "", f'Cannot find device "{args[2]}"'
            return 0, "", ""
        return 1, "", f"unsupported ip command: {args}"

    # --- ovs-vsctl ---

    def _vsctl(self, args: list[str]) -> tuple[int, str, str]:
        if args[0] == "br-exists":
            return (0, "", "") if args[1] in self.bridges else (2, "", "")
        if args[0] == "add-br":
            self.bridges.setdefault(args[1], set())
            self.flows.setdefault(args[1], [])
            return 0, "", ""
        if args[:2] == ["--may-exist", "add-port"]:
            bridge, port = args[2], args[3]
            if bridge not in self.bridges:
                return 1, "", f"ovs-vsctl: no bridge named {bridge}"
            self.bridges[bridge].add(port)
            return 0, "", ""
        return 1, "", f"unsupported ovs-vsctl command: {args}"

    # --- ovs-ofctl ---

    @staticmethod
    def _match_fields(spec: str) -> tuple[int | None, dict[str, str]]:
        cookie = None
        fields = {}
        for token in spec.split(","):
            key, _, value = token.partition("=")
            if key == "cookie":
                cookie = int(value.split("/", 1)[0], 16)
            elif key:
                fields[key] = value
        return cookie, fields

    @staticmethod
    def _rule_fields(rule: FlowRule) -> dict[str, str]:
        fields = {"in_port": rule.match.in_port}
        if rule.match.dl_vlan is not None:
            fields["dl_vlan"] = str(rule.match.dl_vlan)
        if rule.match.dl_dst is not None:
            fields["dl_dst"] = rule.match.dl_dst
        return fields

    def _ofctl(self, args: list[str]) -> tuple[int, str, str]:
        names = args[0] == "--names"
        if names:
            args = args[1:]
        command, bridge = args[0], args[1]
        if bridge not in self.bridges:
            return 1, "", f"ovs-ofctl: {bridge} is not a bridge or a socket"
        table = self.flows.setdefault(bridge, [])

        if command == "add-flow":
            rule = parse_flow_line(args[2])
            if rule is None:
                return 1, "", f"ovs-ofctl: unparseable flow {args[2]}"
            table[:] = [r for r in table if not (r.match == rule.match and r.priority == rule.priority)]
            table.append(rule)
            return 0, "", ""

        if command == "del-flows":
            cookie, fields = self._match_fields(args[2]) if len(args) > 2 else (None, {})
            table[:] = [
                r for r in table
                if not (
                    (cookie is None or r.cookie == cookie)
                    and all(self._rule_fields(r).get(k) == v for k, v in fields.items())
                )
            ]
            return 0, "", ""

        if command == "dump-flows":
            cookie, _ = self._match_fields(args[2]) if len(args) > 2 else (None, {})
            lines = ["NXST_FLOW reply (xid=0x4):"]
            for r in table:
                if cookie is not None and r.cookie != cookie:
                    continue
                lines.append(
                    f" cookie={r.cookie:#x}, duration=12.345s, table=0, n_packets=0, n_bytes=0, "
                    f"priority={r.priority},{r.match.to_spec()} actions={r.action.to_spec()}"
                )
            return 0, "\n".join(lines) + "\n", ""

        return 1, "", f"unsupported ovs-ofctl command: {command}"


class FakeBackend(EndpointBackend):
    """Endpoint backend keeping its inventory in a dict."""

    def __init__(self, kind: BackendKind = BackendKind.VM):
        self.kind = kind
        self.endpoints: dict[str, dict] = {}
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.specs: dict[str, AttachmentSpec] = {}
        self.fail_create: set[str] = set()
        self.fail_destroy: set[str] = set()
        self.never_attached: set[str] = set()
        self.attach_delays: dict[str, int] = {}
        self.closed = False
        self._ports = 0

    def add_existing(self, name: str, running: bool = True) -> None:
        self._ports += 1
        self.endpoints[name] = {
            "running": running,
            "attachment": Attachment(port_name=f"vnet{self._ports}", mac=synthesize_mac(name)),
        }

    async def create(self, name: str, image: str, spec: AttachmentSpec) -> str:
        if name in self.fail_create:
            # Partially defined before failing, so rollback has something to remove
            self.endpoints[name] = {"running": False, "attachment": None}
            raise EndpointError(f"create of {name} refused", resource=name)
        self.add_existing(name)
        self.created.append(name)
        self.specs[name] = spec
        return f"id-{name}"

    async def destroy(self, name: str) -> bool:
        if name in self.fail_destroy:
            raise EndpointError(f"destroy of {name} refused", resource=name)
        if self.endpoints.pop(name, None) is None:
            return False
        self.destroyed.append(name)
        return True

    async def list_names(self, prefix: str) -> list[str]:
        return sorted(n for n in self.endpoints if n.startswith(prefix))

    async def running(self, name: str) -> bool:
        return name in self.endpoints and self.endpoints[name]["running"]

    async def attachment_of(self, name: str) -> Attachment:
        entry = self.endpoints.get(name)
        if entry is None or not entry["running"] or name in self.never_attached:
            raise EndpointNotRunningError(f"{name} has no attachment", resource=name)
        if self.attach_delays.get(name, 0) > 0:
            self.attach_delays[name] -= 1
            raise EndpointNotRunningError(f"{name} attachment not ready", resource=name)
        return entry["attachment"]

    async def close(self) -> None:
        self.closed = True


class FakeImages:
    def __init__(self):
        self.prepared: list[str] = []

    async def prepare(self, kind: BackendKind, name: str) -> str:
        self.prepared.append(name)
        return f"/images/{name}.qcow2"

    def release(self, kind: BackendKind, name: str) -> None:
        pass


@pytest.fixture
def host():
    fake = FakeHost()
    fake.add_link("lo", mac="00:00:00:00:00:00")
    fake.add_link(UPLINK, mac=UPLINK_MAC, up=True)
    return fake


@pytest.fixture
def backend():
    return FakeBackend(BackendKind.VM)


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def make_orchestrator(host, backend, images):
    """Build an orchestrator over the fake host and backend from raw request fields."""

    def _make(**raw) -> LifecycleOrchestrator:
        raw.setdefault("interface", UPLINK)
        raw.setdefault("vlan_id", 10)
        request = ProvisionRequest.parse(**raw)
        return LifecycleOrchestrator(
            request,
            backend=backend,
            segmenter=UplinkSegmenter(run=host),
            images=images,
            run=host,
        )

    return _make
