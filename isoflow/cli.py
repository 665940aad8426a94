"""Command-line entry point.

    isoflow -i ens20 -v 10 -s 192.168.10.0/24 -c 3 start
    isoflow -m 52:54:00:aa:bb:cc -v 10 -b container stop

Exit codes:
    0  success
    1  stop finished but left resources behind
    2  invalid input or unresolvable uplink (nothing was changed)
    3  another run holds the (uplink, vlan) scope
    4  infrastructure failure (endpoint creation was rolled back)
    5  started, but some endpoints are not isolated
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from isoflow import __version__
from isoflow.errors import (
    IsoflowError,
    ResolutionError,
    SegmentBusyError,
    ValidationError,
)
from isoflow.lifecycle import LifecycleOrchestrator, StartReport, StatusReport, TeardownReport
from isoflow.logging_config import setup_logging
from isoflow.models import BackendKind
from isoflow.providers import reset_backends
from isoflow.schemas import ProvisionRequest

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INCOMPLETE_TEARDOWN = 1
EXIT_INVALID = 2
EXIT_BUSY = 3
EXIT_FAILED = 4
EXIT_PARTIAL = 5

# Asked for interactively when missing and stdin is a terminal
_PROMPTS: dict[str, dict[str, str]] = {
    "start": {"vlan_id": "VLAN ID (1-4094)", "subnet": "Subnet (e.g. 192.168.10.0/24)", "count": "Number of endpoints"},
    "stop": {"vlan_id": "VLAN ID (1-4094)"},
    "status": {"vlan_id": "VLAN ID (1-4094)"},
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="isoflow",
        description="Provision VLAN-isolated VMs or containers behind an OVS bridge.",
    )
    parser.add_argument("action", choices=["start", "stop", "status"], help="Lifecycle action")
    parser.add_argument("-i", "--interface", help="Physical uplink interface name")
    parser.add_argument("-m", "--mac", dest="uplink_mac", help="Uplink MAC address (resolved to an interface)")
    parser.add_argument("-v", "--vlan", dest="vlan_id", help="VLAN ID (1-4094)")
    parser.add_argument("-s", "--subnet", help="Endpoint subnet in CIDR notation")
    parser.add_argument("-c", "--count", help="Number of endpoints")
    parser.add_argument(
        "-b", "--backend", choices=[k.value for k in BackendKind], default=BackendKind.VM.value,
        help="Endpoint backend (default: vm)",
    )
    parser.add_argument("-o", "--offset", help="Address offset (default depends on backend)")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--log-level", default=None, help="Override ISOFLOW_LOG_LEVEL")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _prompt_missing(action: str, raw: dict[str, Any]) -> None:
    if not sys.stdin.isatty():
        return
    if not raw.get("interface") and not raw.get("uplink_mac"):
        raw["interface"] = input("Uplink interface name: ").strip() or None
    for key, label in _PROMPTS[action].items():
        if raw.get(key) is None:
            raw[key] = input(f"{label}: ").strip()


def _request_from_args(args: argparse.Namespace) -> ProvisionRequest:
    raw: dict[str, Any] = {
        "interface": args.interface,
        "uplink_mac": args.uplink_mac,
        "vlan_id": args.vlan_id,
        "subnet": args.subnet,
        "count": args.count,
        "backend": args.backend,
        "offset": args.offset,
    }
    _prompt_missing(args.action, raw)
    return ProvisionRequest.parse(**{k: v for k, v in raw.items() if v is not None})


def _print_start(report: StartReport) -> None:
    print(f"Segment {report.segment.name} ready (vlan {report.segment.vlan_id} on {report.segment.physical})")
    isolated = set(report.isolated)
    for endpoint in report.endpoints:
        mark = "isolated" if endpoint.name in isolated else "NOT ISOLATED"
        port = endpoint.port_name or "-"
        print(f"  {endpoint.name:<24} {endpoint.ip or '-':<16} {port:<16} {mark}")
    for failure in report.failures:
        print(f"  ! {failure.endpoint}: {failure.reason}")


def _print_stop(report: TeardownReport) -> None:
    print(f"Revoked {report.revoked_rules} flow rule(s)")
    for name in report.destroyed:
        print(f"  destroyed {name}")
    print(f"Segment removed: {'yes' if report.segment_removed else 'no'}")
    for error in report.errors:
        print(f"  ! {error}")


def _print_status(report: StatusReport) -> None:
    if report.segment is not None:
        state = "present" if report.segment_present else "absent"
        print(f"Segment {report.segment.name}: {state}")
    print(f"Managed flow rules: {report.managed_rules}")
    for endpoint in report.endpoints:
        isolated = report.isolated.get(endpoint.name)
        mark = "-" if isolated is None else ("isolated" if isolated else "NOT ISOLATED")
        running = "running" if endpoint.running else "stopped"
        print(f"  {endpoint.name:<24} {endpoint.ip or '-':<16} {running:<8} {mark}")


async def run(args: argparse.Namespace, orchestrator: LifecycleOrchestrator | None = None) -> int:
    """Execute one action; returns the process exit code."""
    try:
        request = _request_from_args(args)
        orchestrator = orchestrator or LifecycleOrchestrator(request)
    except ValidationError as e:
        logger.error(str(e))
        return EXIT_INVALID
    except IsoflowError as e:
        logger.error(f"{args.action} failed: {e}")
        return EXIT_FAILED

    try:
        if args.action == "start":
            report = await orchestrator.start()
            _emit(args, report)
            return EXIT_OK if report.fully_isolated else EXIT_PARTIAL
        if args.action == "stop":
            report = await orchestrator.stop()
            _emit(args, report)
            return EXIT_OK if report.ok else EXIT_INCOMPLETE_TEARDOWN
        report = await orchestrator.status()
        _emit(args, report)
        return EXIT_OK
    except (ValidationError, ResolutionError) as e:
        logger.error(str(e))
        return EXIT_INVALID
    except SegmentBusyError as e:
        logger.error(str(e))
        return EXIT_BUSY
    except IsoflowError as e:
        logger.error(f"{args.action} failed: {e}")
        return EXIT_FAILED
    finally:
        await orchestrator.backend.close()


def _emit(args: argparse.Namespace, report: StartReport | TeardownReport | StatusReport) -> None:
    if args.json:
        print(report.to_response().model_dump_json(indent=2))
    elif isinstance(report, StartReport):
        _print_start(report)
    elif isinstance(report, TeardownReport):
        _print_stop(report)
    else:
        _print_status(report)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    try:
        return asyncio.run(run(args))
    finally:
        reset_backends()


if __name__ == "__main__":
    raise SystemExit(main())
