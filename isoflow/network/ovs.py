"""OVS flow table driver for isolation pairs.

All rules for one VLAN scope carry the same cookie, so "revoke everything
we manage" is a single cookie-masked del-flows that never touches rules
installed by anything else on the bridge. Every mutation of the flow
table is serialized through one asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging

from isoflow import metrics
from isoflow.config import settings
from isoflow.errors import FlowError
from isoflow.models import Attachment
from isoflow.network.cmd import CommandRunner, ovs_ofctl, ovs_vsctl, run_cmd
from isoflow.network.flows import (
    FlowRule,
    IsolationPair,
    compile_isolation_rules,
    pairs_present,
    parse_dump_flows,
    scope_cookie,
)

logger = logging.getLogger(__name__)


class FlowApplier:
    """Installs and removes isolation pairs on the managed bridge."""

    def __init__(
        self,
        vlan_id: int,
        uplink_port: str,
        bridge: str | None = None,
        run: CommandRunner | None = None,
        retries: int | None = None,
        retry_delay: float | None = None,
    ):
        self.vlan_id = vlan_id
        self.uplink_port = uplink_port
        self.bridge = bridge or settings.ovs_bridge_name
        self.cookie = scope_cookie(vlan_id)
        self._run = run or run_cmd
        self._retries = settings.flow_retries if retries is None else retries
        self._retry_delay = settings.flow_retry_delay if retry_delay is None else retry_delay
        self._lock = asyncio.Lock()

    @property
    def _cookie_match(self) -> str:
        return f"cookie={self.cookie:#x}/-1"

    async def _ofctl(self, *args: str) -> tuple[int, str, str]:
        return await ovs_ofctl(*args, run=self._run)

    async def _vsctl(self, *args: str) -> tuple[int, str, str]:
        return await ovs_vsctl(*args, run=self._run)

    async def bridge_exists(self) -> bool:
        code, _, _ = await self._vsctl("br-exists", self.bridge)
        return code == 0

    async def ensure_bridge(self) -> bool:
        """Ensure the bridge exists and the uplink is one of its ports.

        A new bridge is created in secure fail-mode so that nothing but the
        installed pairs forwards traffic. Returns True if the bridge was created.
        """
        created = False
        if not await self.bridge_exists():
            code, _, stderr = await self._vsctl(
                "add-br", self.bridge, "--", "set-fail-mode", self.bridge, "secure",
            )
            if code != 0:
                raise FlowError(f"Failed to create OVS bridge {self.bridge}: {stderr.strip()}", resource=self.bridge)
            await self._run(["ip", "link", "set", "dev", self.bridge, "up"])
            logger.info(f"Created OVS bridge {self.bridge} (fail-mode secure)")
            created = True
        else:
            logger.debug(f"OVS bridge {self.bridge} already exists")

        code, _, stderr = await self._vsctl("--may-exist", "add-port", self.bridge, self.uplink_port)
        if code != 0:
            raise FlowError(
                f"Failed to add uplink {self.uplink_port} to {self.bridge}: {stderr.strip()}",
                resource=self.uplink_port,
            )
        return created

    def compile(self, endpoint: str, attachment: Attachment) -> IsolationPair:
        outbound, inbound = compile_isolation_rules(
            self.uplink_port, self.vlan_id, attachment.port_name, attachment.mac, cookie=self.cookie,
        )
        return IsolationPair(endpoint=endpoint, outbound=outbound, inbound=inbound)

    async def _with_retries(self, operation: str, args: list[str], resource: str) -> None:
        last_error = ""
        for attempt in range(1, self._retries + 1):
            code, _, stderr = await self._ofctl(*args)
            if code == 0:
                metrics.flow_operations.labels(operation=operation, status="success").inc()
                return
            last_error = stderr.strip()
            logger.warning(
                f"ovs-ofctl {operation} failed for {resource} "
                f"(attempt {attempt}/{self._retries}): {last_error}"
            )
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay)
        metrics.flow_operations.labels(operation=operation, status="error").inc()
        raise FlowError(f"{operation} failed for {resource}: {last_error}", resource=resource)

    async def _delete(self, rule: FlowRule, resource: str) -> None:
        await self._with_retries("del-flows", ["del-flows", self.bridge, rule.to_del_spec()], resource)

    async def apply_pair(self, pair: IsolationPair) -> None:
        """Install one pair; a half-installed pair is removed before raising."""
        async with self._lock:
            # Never stack a second pair for the same endpoint
            for rule in pair.rules:
                await self._delete(rule, pair.endpoint)
            try:
                for rule in pair.rules:
                    await self._with_retries("add-flow", ["add-flow", self.bridge, rule.to_add_spec()], pair.endpoint)
            except FlowError:
                for rule in pair.rules:
                    try:
                        await self._delete(rule, pair.endpoint)
                    except FlowError as cleanup_error:
                        logger.error(f"Failed to remove partial pair for {pair.endpoint}: {cleanup_error}")
                raise
        logger.info(
            f"Applied isolation pair for {pair.endpoint}: "
            f"{pair.outbound.match.in_port} <-> {self.uplink_port} (vlan {self.vlan_id})"
        )

    async def apply(self, pairs: list[IsolationPair]) -> dict[str, FlowError]:
        """Install every pair; returns failures keyed by endpoint name.

        One endpoint's failure never prevents the others from being installed.
        """
        failures: dict[str, FlowError] = {}
        for pair in pairs:
            try:
                await self.apply_pair(pair)
            except FlowError as e:
                logger.error(f"Isolation pair for {pair.endpoint} not installed: {e}")
                failures[pair.endpoint] = e
        return failures

    async def dump(self) -> list[FlowRule]:
        """Rules on the bridge carrying this scope's cookie."""
        code, stdout, stderr = await self._ofctl("--names", "dump-flows", self.bridge, self._cookie_match)
        if code != 0:
            raise FlowError(f"Failed to dump flows on {self.bridge}: {stderr.strip()}", resource=self.bridge)
        return [r for r in parse_dump_flows(stdout) if r.cookie == self.cookie]

    async def revoke(self, endpoint: str | None = None, attachment: Attachment | None = None) -> int:
        """Remove one endpoint's pair, or every managed rule when no attachment is given.

        Returns the number of rules that were present before removal.
        """
        if attachment is None:
            async with self._lock:
                try:
                    present = len(await self.dump())
                except FlowError as e:
                    logger.warning(f"Could not count managed flows before revoke: {e}")
                    present = 0
                await self._with_retries("del-flows", ["del-flows", self.bridge, self._cookie_match], self.bridge)
            logger.info(f"Revoked all managed flows on {self.bridge} (cookie {self.cookie:#x}, {present} rules)")
            return present

        pair = self.compile(endpoint or attachment.port_name, attachment)
        async with self._lock:
            try:
                rules = await self.dump()
                present = sum(pairs_present(rules, self.uplink_port, attachment.port_name, attachment.mac))
            except FlowError as e:
                logger.warning(f"Could not count flows for {pair.endpoint} before revoke: {e}")
                present = 0
            for rule in pair.rules:
                await self._delete(rule, pair.endpoint)
        logger.info(f"Revoked isolation pair for {pair.endpoint} ({present} rules)")
        return present

    async def verify(self, pairs: list[IsolationPair]) -> dict[str, tuple[int, int]]:
        """(outbound, inbound) rule counts per endpoint as found in the table."""
        rules = await self.dump()
        return {
            pair.endpoint: pairs_present(
                rules, self.uplink_port, pair.outbound.match.in_port, pair.inbound.match.dl_dst or "",
            )
            for pair in pairs
        }
