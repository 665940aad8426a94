from __future__ import annotations

import fcntl
import json
import os
import sys

import pytest

from isoflow import cli, providers
from isoflow.lifecycle import LifecycleOrchestrator
from isoflow.locks import _lock_path
from isoflow.network.vlan import UplinkSegmenter

from .conftest import UPLINK

START = ["-i", UPLINK, "-v", "10", "-s", "192.168.10.0/24", "-c", "2"]


@pytest.fixture(autouse=True)
def fake_orchestrator(monkeypatch, host, backend, images):
    def factory(request):
        return LifecycleOrchestrator(
            request, backend=backend, segmenter=UplinkSegmenter(run=host), images=images, run=host,
        )

    monkeypatch.setattr(cli, "LifecycleOrchestrator", factory)


def test_start_json_output(capsys, backend):
    assert cli.main([*START, "--json", "start"]) == cli.EXIT_OK

    out = json.loads(capsys.readouterr().out)
    assert out["state"] == "flows_applied"
    assert out["segment"] == "ens20.10"
    assert [e["ip"] for e in out["endpoints"]] == ["192.168.10.10", "192.168.10.11"]
    assert all(e["isolated"] for e in out["endpoints"])
    assert backend.closed


def test_start_then_stop_text_output(capsys, host):
    assert cli.main([*START, "start"]) == cli.EXIT_OK
    assert cli.main(["-i", UPLINK, "-v", "10", "stop"]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "Segment ens20.10 ready" in out
    assert "Revoked 4 flow rule(s)" in out
    assert "ens20.10" not in host.links


@pytest.mark.parametrize("argv", [
    ["-i", UPLINK, "-v", "4095", "stop"],
    ["-i", UPLINK, "-v", "abc", "stop"],
    ["-i", UPLINK, "-v", "10", "-c", "2", "start"],
    ["-i", UPLINK, "-v", "10", "-s", "192.168.10.0", "-c", "2", "start"],
    ["-i", UPLINK, "-v", "10", "-s", "192.168.10.0/24", "-c", "0", "start"],
    ["-i", "eth9", "-v", "10", "-s", "192.168.10.0/24", "-c", "1", "start"],
])
def test_invalid_input_exit_code(argv, host):
    assert cli.main(argv) == cli.EXIT_INVALID
    assert host.commands("ovs-vsctl") == []


def test_busy_scope_exit_code():
    path = _lock_path(UPLINK, 10)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_RDWR)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        assert cli.main([*START, "start"]) == cli.EXIT_BUSY
    finally:
        os.close(fd)


def test_endpoint_failure_exit_code(backend):
    backend.fail_create = {"isoflow-vm-10-2"}
    assert cli.main([*START, "start"]) == cli.EXIT_FAILED
    assert backend.endpoints == {}


def test_partial_isolation_exit_code(capsys, backend):
    backend.never_attached = {"isoflow-vm-10-1"}
    assert cli.main([*START, "start"]) == cli.EXIT_PARTIAL
    assert "NOT ISOLATED" in capsys.readouterr().out


def test_incomplete_teardown_exit_code(backend):
    assert cli.main([*START, "start"]) == cli.EXIT_OK
    backend.fail_destroy = {"isoflow-vm-10-1"}
    assert cli.main(["-i", UPLINK, "-v", "10", "stop"]) == cli.EXIT_INCOMPLETE_TEARDOWN


def test_status(capsys):
    assert cli.main([*START, "start"]) == cli.EXIT_OK
    assert cli.main(["-i", UPLINK, "-v", "10", "-s", "192.168.10.0/24", "--json", "status"]) == cli.EXIT_OK
    out = capsys.readouterr().out
    status = json.loads(out[out.index('{\n  "segment"'):])
    assert status["segment_present"] is True
    assert status["managed_rules"] == 4


def test_prompts_for_missing_values_on_tty(monkeypatch, backend):
    class _Tty:
        def isatty(self):
            return True

    answers = iter([UPLINK, "10", "192.168.10.0/24", "1"])
    monkeypatch.setattr(cli.sys, "stdin", _Tty())
    monkeypatch.setattr("builtins.input", lambda _prompt: next(answers))

    assert cli.main(["start"]) == cli.EXIT_OK
    assert sorted(backend.endpoints) == ["isoflow-vm-10-1"]


def test_parser_rejects_unknown_action():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["restart"])


def test_missing_vm_backend_exit_code(monkeypatch):
    providers.reset_backends()
    monkeypatch.setattr(cli, "LifecycleOrchestrator", LifecycleOrchestrator)
    monkeypatch.setitem(sys.modules, "isoflow.providers.libvirt", None)
    assert cli.main(["-i", UPLINK, "-v", "10", "stop"]) == cli.EXIT_FAILED
