"""Lifecycle orchestrator.

Drives one (uplink, vlan) scope through

    idle -> segment_ready -> endpoints_ready -> flows_applied

on start, and back down to idle on stop. Nothing is persisted between
invocations: every run re-derives the world from the host (sub-interfaces,
hypervisor/runtime inventory, flow table) and reconciles it.

Failure policy per phase:
    - validation/resolution: raised before any host mutation
    - segment: fatal, nothing to unwind
    - endpoints: fatal, this run's endpoints (and segment, if this run
      created it) are unwound before raising
    - flows: per endpoint, recorded and reported, never aborts the batch
    - teardown: best effort, every step runs and errors are collected
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from isoflow import metrics
from isoflow.addressing import AddressAllocation, allocate_range
from isoflow.config import settings
from isoflow.endpoints import EndpointRegistry
from isoflow.errors import (
    EndpointError,
    EndpointNotRunningError,
    FlowError,
    InterfaceNotFoundError,
    ResolutionError,
    SegmentError,
)
from isoflow.locks import ANY_UPLINK, segment_lock
from isoflow.models import (
    Attachment,
    AttachmentSpec,
    Endpoint,
    GuestNetworkConfig,
    UplinkSegment,
    endpoint_name,
)
from isoflow.network.cmd import CommandRunner
from isoflow.network.flows import IsolationPair, pairs_present
from isoflow.network.ovs import FlowApplier
from isoflow.network.vlan import UplinkSegmenter
from isoflow.providers import get_backend
from isoflow.providers.base import EndpointBackend
from isoflow.providers.images import ImageProvider
from isoflow.reconcile import reconcile
from isoflow.schemas import (
    AttachmentView,
    EndpointView,
    IsolationFailureView,
    ProvisionRequest,
    StartResponse,
    StatusResponse,
    StopResponse,
)

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    IDLE = "idle"
    SEGMENT_READY = "segment_ready"
    ENDPOINTS_READY = "endpoints_ready"
    FLOWS_APPLIED = "flows_applied"


class LifecycleStateMachine:
    """Validated transitions for one scope.

    Lifecycle:
        idle -> segment_ready -> endpoints_ready -> flows_applied (start)
        flows_applied -> endpoints_ready -> segment_ready -> idle (stop)
        segment_ready -> idle (rollback after an endpoint failure)
    """

    VALID_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
        LifecycleState.IDLE: {LifecycleState.SEGMENT_READY},
        LifecycleState.SEGMENT_READY: {LifecycleState.ENDPOINTS_READY, LifecycleState.IDLE},
        LifecycleState.ENDPOINTS_READY: {LifecycleState.FLOWS_APPLIED, LifecycleState.SEGMENT_READY},
        LifecycleState.FLOWS_APPLIED: {LifecycleState.ENDPOINTS_READY},
    }

    def __init__(self, initial: LifecycleState = LifecycleState.IDLE):
        self.state = initial
        self.history: list[LifecycleState] = [initial]

    @classmethod
    def can_transition(cls, current: LifecycleState, target: LifecycleState) -> bool:
        """Check if a state transition is valid."""
        if current == target:
            return True
        return target in cls.VALID_TRANSITIONS.get(current, set())

    def advance(self, target: LifecycleState) -> None:
        if not self.can_transition(self.state, target):
            raise RuntimeError(f"Invalid lifecycle transition {self.state.value} -> {target.value}")
        if target != self.state:
            logger.debug(f"Lifecycle {self.state.value} -> {target.value}")
            self.state = target
            self.history.append(target)


@dataclass
class IsolationFailure:
    """An endpoint left without a complete isolation pair."""

    endpoint: str
    reason: str


def _endpoint_view(endpoint: Endpoint, isolated: bool | None = None) -> EndpointView:
    attachment = None
    if endpoint.attachment is not None:
        attachment = AttachmentView(port_name=endpoint.attachment.port_name, mac=endpoint.attachment.mac)
    return EndpointView(
        name=endpoint.name,
        kind=endpoint.kind,
        ordinal=endpoint.ordinal,
        running=endpoint.running,
        ip=endpoint.ip,
        attachment=attachment,
        isolated=isolated,
    )


@dataclass
class StartReport:
    state: LifecycleState
    segment: UplinkSegment
    endpoints: list[Endpoint] = field(default_factory=list)
    isolated: list[str] = field(default_factory=list)
    failures: list[IsolationFailure] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def fully_isolated(self) -> bool:
        return not self.failures

    def to_response(self) -> StartResponse:
        isolated = set(self.isolated)
        return StartResponse(
            state=self.state.value,
            segment=self.segment.name,
            endpoints=[_endpoint_view(e, e.name in isolated) for e in self.endpoints],
            isolated=self.isolated,
            failures=[IsolationFailureView(endpoint=f.endpoint, reason=f.reason) for f in self.failures],
            created=self.created,
            deleted=self.deleted,
        )


@dataclass
class TeardownReport:
    state: LifecycleState = LifecycleState.IDLE
    revoked_rules: int = 0
    destroyed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    segment_removed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_response(self) -> StopResponse:
        return StopResponse(
            state=self.state.value,
            revoked_rules=self.revoked_rules,
            destroyed=self.destroyed,
            skipped=self.skipped,
            segment_removed=self.segment_removed,
            errors=self.errors,
        )


@dataclass
class StatusReport:
    segment: UplinkSegment | None = None
    segment_present: bool = False
    endpoints: list[Endpoint] = field(default_factory=list)
    isolated: dict[str, bool] = field(default_factory=dict)
    managed_rules: int = 0

    def to_response(self) -> StatusResponse:
        return StatusResponse(
            segment=self.segment.name if self.segment else None,
            segment_present=self.segment_present,
            endpoints=[_endpoint_view(e, self.isolated.get(e.name)) for e in self.endpoints],
            managed_rules=self.managed_rules,
        )


def _by_ordinal(endpoint: Endpoint) -> tuple[int, str]:
    return (endpoint.ordinal if endpoint.ordinal is not None else 0, endpoint.name)


class LifecycleOrchestrator:
    """Start, stop and inspect one (uplink, vlan) scope.

    Collaborators default to the real host drivers; tests pass fakes.
    """

    def __init__(
        self,
        request: ProvisionRequest,
        backend: EndpointBackend | None = None,
        segmenter: UplinkSegmenter | None = None,
        images: ImageProvider | None = None,
        run: CommandRunner | None = None,
        bridge: str | None = None,
    ):
        self.request = request
        self.backend = backend or get_backend(request.backend)
        self.segmenter = segmenter or UplinkSegmenter(run=run)
        self.images = images or ImageProvider(run=run)
        self.bridge = bridge or settings.ovs_bridge_name
        self._run = run
        self.machine = LifecycleStateMachine()

    @property
    def vlan_id(self) -> int:
        return self.request.vlan_id

    def _applier(self, uplink: str) -> FlowApplier:
        return FlowApplier(self.vlan_id, uplink, bridge=self.bridge, run=self._run)

    def _registry(self) -> EndpointRegistry:
        return EndpointRegistry(
            self.backend,
            self.request.prefix,
            subnet=self.request.subnet,
            offset=self.request.effective_offset,
        )

    async def _resolve_uplink(self) -> str:
        return await self.segmenter.resolve_uplink(
            name=self.request.interface, mac=self.request.uplink_mac,
        )

    # --- start ---

    async def start(self) -> StartReport:
        """Bring the scope to flows_applied.

        Raises:
            ValidationError / ResolutionError: before any mutation.
            SegmentBusyError: another run holds the scope.
            SegmentError / EndpointError / FlowError: infrastructure failure;
                endpoint failures are rolled back first.
        """
        self.request.require_for_start()
        uplink = await self._resolve_uplink()
        if not await self.segmenter.interface_exists(uplink):
            raise InterfaceNotFoundError(f"Uplink interface {uplink} does not exist", resource=uplink)

        started = time.monotonic()
        status = "error"
        try:
            async with segment_lock(uplink, self.vlan_id):
                report = await self._start_locked(uplink)
            status = "success" if report.fully_isolated else "partial"
            return report
        finally:
            metrics.lifecycle_duration.labels(action="start", status=status).observe(time.monotonic() - started)

    async def _start_locked(self, uplink: str) -> StartReport:
        self.machine = LifecycleStateMachine()
        applier = self._applier(uplink)
        await applier.ensure_bridge()
        # Rules from a previous run may reference ports that no longer exist
        await applier.revoke()

        segment, segment_created = await self.segmenter.ensure_with_status(uplink, self.vlan_id)
        self.machine.advance(LifecycleState.SEGMENT_READY)

        try:
            endpoints, created, deleted = await self._ensure_endpoints()
        except EndpointError:
            if segment_created:
                try:
                    await self.segmenter.teardown(segment)
                except SegmentError as e:
                    logger.error(f"Rollback could not remove segment {segment.name}: {e}")
            self.machine.advance(LifecycleState.IDLE)
            raise
        self.machine.advance(LifecycleState.ENDPOINTS_READY)

        endpoints, isolated, failures = await self._isolate(applier, endpoints)
        self.machine.advance(LifecycleState.FLOWS_APPLIED)

        if failures:
            metrics.isolation_failures.inc(len(failures))
            logger.warning(
                f"Start of vlan {self.vlan_id} on {uplink} finished with {len(failures)} "
                f"unisolated endpoint(s): {', '.join(f.endpoint for f in failures)}"
            )
        else:
            logger.info(f"Start of vlan {self.vlan_id} on {uplink} complete: {len(isolated)} endpoint(s) isolated")

        return StartReport(
            state=self.machine.state,
            segment=segment,
            endpoints=endpoints,
            isolated=isolated,
            failures=failures,
            created=created,
            deleted=deleted,
        )

    def _attachment_spec(self, allocation: AddressAllocation) -> AttachmentSpec:
        guest = GuestNetworkConfig(
            address=allocation.address,
            prefix_len=allocation.prefix_len,
            gateway=allocation.gateway,
            dns_servers=tuple(settings.dns_servers),
        )
        return AttachmentSpec(
            bridge=self.bridge,
            guest=guest,
            metadata={"isoflow.vlan": str(self.vlan_id), "isoflow.ordinal": str(allocation.ordinal)},
        )

    async def _ensure_endpoints(self) -> tuple[list[Endpoint], list[str], list[str]]:
        """Reconcile live endpoints against ordinals 1..count.

        Returns (endpoints, created, deleted).
        """
        prefix = self.request.prefix
        allocations = allocate_range(self.request.subnet, self.request.effective_offset, self.request.count)
        desired = {endpoint_name(prefix, ordinal): alloc for ordinal, alloc in allocations.items()}

        registry = self._registry()
        observed = {e.name: e for e in await registry.list_endpoints()}
        plan = reconcile(desired, observed, differs=lambda _want, have: not have.running)

        deleted = []
        for name in plan.delete:
            try:
                if await self.backend.destroy(name):
                    deleted.append(name)
                    logger.info(f"Removed surplus endpoint {name}")
            except EndpointError as e:
                logger.error(f"Could not remove surplus endpoint {name}: {e}")
        for name in plan.keep:
            logger.info(f"Endpoint {name} already running, skipping creation")

        pending = plan.create + plan.update
        semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_creates))

        async def create_one(name: str) -> None:
            async with semaphore:
                if name in plan.update:
                    logger.info(f"Endpoint {name} exists but is not running, recreating")
                    await self.backend.destroy(name)
                image = await self.images.prepare(self.backend.kind, name)
                await self.backend.create(name, image, self._attachment_spec(desired[name]))

        results = await asyncio.gather(*(create_one(n) for n in pending), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        failed = [(n, r) for n, r in zip(pending, results) if isinstance(r, Exception)]
        created = [n for n, r in zip(pending, results) if not isinstance(r, Exception)]

        if failed:
            for name, error in failed:
                logger.error(f"Failed to create endpoint {name}: {error}")
            await self._unwind(created + [n for n, _ in failed])
            name, error = failed[0]
            if isinstance(error, EndpointError):
                raise error
            raise EndpointError(f"Failed to create endpoint {name}: {error}", resource=name) from error

        endpoints = sorted(await registry.list_endpoints(), key=_by_ordinal)
        return endpoints, created, deleted

    async def _unwind(self, names: list[str]) -> None:
        """Destroy endpoints created by this run, including partial ones."""
        for name in names:
            try:
                await self.backend.destroy(name)
                logger.info(f"Rolled back endpoint {name}")
            except EndpointError as e:
                logger.error(f"Rollback could not remove endpoint {name}: {e}")

    async def _wait_for_attachment(self, registry: EndpointRegistry, endpoint: Endpoint) -> Attachment:
        """Poll the live attachment with exponential backoff."""
        attempts = max(1, settings.attachment_retries)
        delay = settings.attachment_backoff
        for attempt in range(1, attempts + 1):
            try:
                return await registry.attachment_of(endpoint)
            except EndpointNotRunningError as e:
                if attempt == attempts:
                    raise
                logger.debug(f"Attachment of {endpoint.name} not ready (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, settings.attachment_backoff_max)
        raise EndpointNotRunningError(f"No attachment for {endpoint.name}", resource=endpoint.name)

    async def _isolate(
        self, applier: FlowApplier, endpoints: list[Endpoint],
    ) -> tuple[list[Endpoint], list[str], list[IsolationFailure]]:
        registry = self._registry()
        failures: dict[str, IsolationFailure] = {}
        pairs: dict[str, IsolationPair] = {}
        resolved: dict[str, Endpoint] = {}

        async def isolate_one(endpoint: Endpoint) -> None:
            try:
                attachment = await self._wait_for_attachment(registry, endpoint)
            except EndpointError as e:
                logger.error(f"Endpoint {endpoint.name} has no live attachment: {e}")
                failures[endpoint.name] = IsolationFailure(endpoint.name, f"attachment unavailable: {e}")
                return
            resolved[endpoint.name] = replace(endpoint, attachment=attachment)
            pair = applier.compile(endpoint.name, attachment)
            try:
                await applier.apply_pair(pair)
            except FlowError as e:
                logger.error(f"Isolation pair for {endpoint.name} not installed: {e}")
                failures[endpoint.name] = IsolationFailure(endpoint.name, f"flow install failed: {e}")
                return
            pairs[endpoint.name] = pair

        await asyncio.gather(*(isolate_one(e) for e in endpoints))

        if pairs:
            try:
                counts = await applier.verify(list(pairs.values()))
            except FlowError as e:
                logger.warning(f"Could not verify installed pairs: {e}")
                counts = {}
            for name, (outbound, inbound) in counts.items():
                if (outbound, inbound) != (1, 1):
                    logger.error(f"Endpoint {name} has {outbound} outbound / {inbound} inbound rules after apply")
                    failures[name] = IsolationFailure(
                        name, f"flow table holds {outbound} outbound / {inbound} inbound rules",
                    )
                    pairs.pop(name)

        result = sorted((resolved.get(e.name, e) for e in endpoints), key=_by_ordinal)
        isolated = [e.name for e in result if e.name in pairs]
        ordered_failures = [failures[e.name] for e in result if e.name in failures]
        return result, isolated, ordered_failures

    # --- stop ---

    async def stop(self) -> TeardownReport:
        """Remove flows, endpoints and segment for the scope.

        Missing resources are not errors. Raises only SegmentBusyError;
        everything else is collected in the report.
        """
        started = time.monotonic()
        report = TeardownReport()
        try:
            uplink: str | None = await self._resolve_uplink()
        except ResolutionError as e:
            logger.warning(f"Uplink not resolvable, segment will be left in place: {e}")
            uplink = None

        status = "error"
        try:
            async with segment_lock(uplink or ANY_UPLINK, self.vlan_id):
                await self._stop_locked(uplink, report)
            status = "success" if report.ok else "partial"
        finally:
            metrics.lifecycle_duration.labels(action="stop", status=status).observe(time.monotonic() - started)

        if report.ok:
            logger.info(
                f"Stop of vlan {self.vlan_id} complete: {report.revoked_rules} rule(s) revoked, "
                f"{len(report.destroyed)} endpoint(s) destroyed"
            )
        else:
            logger.warning(f"Stop of vlan {self.vlan_id} finished with {len(report.errors)} error(s)")
        return report

    async def _stop_locked(self, uplink: str | None, report: TeardownReport) -> None:
        machine = LifecycleStateMachine(LifecycleState.FLOWS_APPLIED)
        prefix = self.request.prefix

        # Revoke by cookie; the uplink port is not needed for that
        applier = self._applier(uplink or "")
        try:
            if await applier.bridge_exists():
                report.revoked_rules = await applier.revoke()
            else:
                logger.info(f"Bridge {applier.bridge} not present, no flows to revoke")
        except FlowError as e:
            report.errors.append(f"flows: {e}")
            logger.error(f"Failed to revoke flows for vlan {self.vlan_id}: {e}")
        machine.advance(LifecycleState.ENDPOINTS_READY)

        try:
            names = await self.backend.list_names(prefix)
        except EndpointError as e:
            report.errors.append(f"endpoints: {e}")
            logger.error(f"Failed to list endpoints with prefix {prefix}: {e}")
            names = []
        for name in names:
            try:
                if await self.backend.destroy(name):
                    report.destroyed.append(name)
                else:
                    report.skipped.append(name)
            except EndpointError as e:
                report.errors.append(f"{name}: {e}")
                logger.error(f"Failed to destroy endpoint {name}: {e}")
        machine.advance(LifecycleState.SEGMENT_READY)

        if uplink is not None:
            await self._remove_segment(UplinkSegment(uplink, self.vlan_id), prefix, report)
        machine.advance(LifecycleState.IDLE)
        report.state = machine.state

    async def _remove_segment(self, segment: UplinkSegment, prefix: str, report: TeardownReport) -> None:
        try:
            remaining = await self.backend.list_names(prefix)
        except EndpointError as e:
            report.errors.append(f"segment: could not confirm endpoints are gone: {e}")
            return
        if remaining:
            report.errors.append(f"segment: {segment.name} kept, endpoints remain: {', '.join(remaining)}")
            logger.error(f"Keeping segment {segment.name}: endpoints {remaining} still attached")
            return
        try:
            report.segment_removed = await self.segmenter.teardown(segment)
        except SegmentError as e:
            report.errors.append(f"segment: {e}")
            logger.error(f"Failed to remove segment {segment.name}: {e}")

    # --- status ---

    async def status(self) -> StatusReport:
        """Live view of the scope; read only."""
        report = StatusReport()
        try:
            uplink: str | None = await self._resolve_uplink()
        except ResolutionError as e:
            logger.info(f"Uplink not resolvable: {e}")
            uplink = None

        if uplink is not None:
            report.segment = UplinkSegment(uplink, self.vlan_id)
            report.segment_present = await self.segmenter.exists(report.segment)

        endpoints = sorted(await self._registry().list_endpoints(with_attachments=True), key=_by_ordinal)
        report.endpoints = endpoints

        applier = self._applier(uplink or "")
        if not await applier.bridge_exists():
            return report
        rules = await applier.dump()
        report.managed_rules = len(rules)
        if uplink is not None:
            for endpoint in endpoints:
                if endpoint.attachment is None:
                    report.isolated[endpoint.name] = False
                    continue
                counts = pairs_present(rules, uplink, endpoint.attachment.port_name, endpoint.attachment.mac)
                report.isolated[endpoint.name] = counts == (1, 1)
        return report
