"""Isolation flow rules: compilation, ovs-ofctl rendering and parsing.

Each endpoint gets exactly one pair of rules:

- outbound: ``in_port=<endpoint>`` -> push VLAN tag, output to the uplink
- inbound: ``in_port=<uplink>,dl_vlan=<vid>,dl_dst=<mac>`` -> strip tag,
  output to the endpoint

The uplink port carries traffic for every endpoint, so inbound rules
disambiguate by destination MAC and VLAN tag. An endpoint's own port only
ever carries its own traffic, so outbound matches the port alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from isoflow.config import settings


class FlowDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


@dataclass(frozen=True)
class FlowMatch:
    in_port: str
    dl_vlan: int | None = None
    dl_dst: str | None = None

    def to_spec(self) -> str:
        parts = [f"in_port={self.in_port}"]
        if self.dl_vlan is not None:
            parts.append(f"dl_vlan={self.dl_vlan}")
        if self.dl_dst is not None:
            parts.append(f"dl_dst={self.dl_dst}")
        return ",".join(parts)


@dataclass(frozen=True)
class FlowAction:
    output: str
    push_vlan: int | None = None
    strip_vlan: bool = False

    def to_spec(self) -> str:
        parts = []
        if self.push_vlan is not None:
            parts.append(f"mod_vlan_vid:{self.push_vlan}")
        if self.strip_vlan:
            parts.append("strip_vlan")
        parts.append(f"output:{self.output}")
        return ",".join(parts)


@dataclass(frozen=True)
class FlowRule:
    match: FlowMatch
    action: FlowAction
    cookie: int = 0
    priority: int = 100

    @property
    def direction(self) -> FlowDirection:
        return FlowDirection.INBOUND if self.action.strip_vlan else FlowDirection.OUTBOUND

    def to_add_spec(self) -> str:
        """Argument for ``ovs-ofctl add-flow``."""
        return (
            f"cookie={self.cookie:#x},priority={self.priority},"
            f"{self.match.to_spec()},actions={self.action.to_spec()}"
        )

    def to_del_spec(self) -> str:
        """Argument for ``ovs-ofctl del-flows`` removing exactly this rule's match."""
        return f"cookie={self.cookie:#x}/-1,{self.match.to_spec()}"


@dataclass(frozen=True)
class IsolationPair:
    """The outbound+inbound rules confining one endpoint."""

    endpoint: str
    outbound: FlowRule
    inbound: FlowRule

    @property
    def rules(self) -> tuple[FlowRule, FlowRule]:
        return self.outbound, self.inbound


def scope_cookie(vlan_id: int, base: int | None = None) -> int:
    """Cookie identifying every rule installed for one VLAN scope."""
    return (settings.flow_cookie_base if base is None else base) + vlan_id


def compile_isolation_rules(
    uplink_port: str,
    vlan_id: int,
    endpoint_port: str,
    endpoint_mac: str,
    cookie: int | None = None,
    priority: int | None = None,
) -> tuple[FlowRule, FlowRule]:
    """Compute the (outbound, inbound) rules for one endpoint."""
    cookie = scope_cookie(vlan_id) if cookie is None else cookie
    priority = settings.flow_priority if priority is None else priority
    mac = endpoint_mac.lower()

    outbound = FlowRule(
        match=FlowMatch(in_port=endpoint_port),
        action=FlowAction(output=uplink_port, push_vlan=vlan_id),
        cookie=cookie,
        priority=priority,
    )
    inbound = FlowRule(
        match=FlowMatch(in_port=uplink_port, dl_vlan=vlan_id, dl_dst=mac),
        action=FlowAction(output=endpoint_port, strip_vlan=True),
        cookie=cookie,
        priority=priority,
    )
    return outbound, inbound


def compile_pair(
    endpoint: str,
    uplink_port: str,
    vlan_id: int,
    endpoint_port: str,
    endpoint_mac: str,
    cookie: int | None = None,
    priority: int | None = None,
) -> IsolationPair:
    outbound, inbound = compile_isolation_rules(
        uplink_port, vlan_id, endpoint_port, endpoint_mac, cookie=cookie, priority=priority,
    )
    return IsolationPair(endpoint=endpoint, outbound=outbound, inbound=inbound)


def _unquote(value: str) -> str:
    return value.strip().strip('"')


def _parse_actions(actions: str) -> FlowAction | None:
    output = None
    push_vlan = None
    strip = False
    for token in (t.strip() for t in actions.split(",")):
        if not token:
            continue
        if token.startswith("mod_vlan_vid:"):
            push_vlan = int(token.split(":", 1)[1])
        elif token == "strip_vlan" or token == "pop_vlan":
            strip = True
        elif token.startswith("output:"):
            output = _unquote(token.split(":", 1)[1])
    if output is None:
        return None
    return FlowAction(output=output, push_vlan=push_vlan, strip_vlan=strip)


def parse_flow_line(line: str) -> FlowRule | None:
    """Parse one ``ovs-ofctl dump-flows`` (or add-flow spec) line.

    Stats fields (duration, n_packets, ...) are ignored. Lines that are not
    one of our pair rules return None.
    """
    line = line.strip()
    if "actions=" not in line:
        return None
    head, _, actions = line.partition("actions=")

    fields: dict[str, str] = {}
    for token in head.replace(" ", ",").split(","):
        token = token.strip()
        if "=" in token:
            key, _, value = token.partition("=")
            fields[key] = _unquote(value)

    if "in_port" not in fields:
        return None
    action = _parse_actions(actions.strip())
    if action is None:
        return None

    cookie_raw = fields.get("cookie", "0").split("/", 1)[0]
    try:
        cookie = int(cookie_raw, 16) if cookie_raw.startswith("0x") else int(cookie_raw)
        priority = int(fields.get("priority", "32768"))
        dl_vlan = int(fields["dl_vlan"]) if "dl_vlan" in fields else None
    except ValueError:
        return None

    dl_dst = fields.get("dl_dst")
    return FlowRule(
        match=FlowMatch(in_port=fields["in_port"], dl_vlan=dl_vlan, dl_dst=dl_dst.lower() if dl_dst else None),
        action=action,
        cookie=cookie,
        priority=priority,
    )


def parse_dump_flows(output: str) -> list[FlowRule]:
    """Parse full ``ovs-ofctl dump-flows`` output."""
    rules = []
    for line in output.splitlines():
        rule = parse_flow_line(line)
        if rule is not None:
            rules.append(rule)
    return rules


def pairs_present(rules: list[FlowRule], uplink_port: str, endpoint_port: str, endpoint_mac: str) -> tuple[int, int]:
    """Count (outbound, inbound) rules in ``rules`` referencing one endpoint."""
    mac = endpoint_mac.lower()
    outbound = sum(
        1 for r in rules
        if r.direction == FlowDirection.OUTBOUND
        and r.match.in_port == endpoint_port
        and r.action.output == uplink_port
    )
    inbound = sum(
        1 for r in rules
        if r.direction == FlowDirection.INBOUND
        and r.match.in_port == uplink_port
        and r.match.dl_dst == mac
        and r.action.output == endpoint_port
    )
    return outbound, inbound
