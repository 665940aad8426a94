"""Exclusive ownership of an (uplink, vlan) scope.

Two layers: a process-wide set of held keys (concurrent requests in the
HTTP agent) and advisory flocks under ``settings.lock_dir`` (separate
CLI invocations). Neither layer waits; a held scope raises
SegmentBusyError immediately.

An empty uplink name (``ANY_UPLINK``) claims the VLAN on every uplink.
It is used when the uplink cannot be resolved and conflicts with any
holder of the same VLAN. Cross-process, every specific holder keeps a
shared flock on the VLAN-wide file and the wildcard holder takes it
exclusively.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from isoflow.config import settings
from isoflow.errors import SegmentBusyError

logger = logging.getLogger(__name__)

ANY_UPLINK = ""

_held: set[tuple[str, int]] = set()
_held_guard = threading.Lock()


def _lock_path(physical_if: str, vlan_id: int) -> Path:
    safe = re.sub(r"[^a-zA-Z0-9_.-]", "_", physical_if or "any")
    return Path(settings.lock_dir) / f"{safe}.{vlan_id}.lock"


def _conflicts(physical_if: str, vlan_id: int) -> bool:
    """Whether a held key overlaps (physical_if, vlan_id). Caller holds _held_guard."""
    if (physical_if, vlan_id) in _held:
        return True
    if physical_if == ANY_UPLINK:
        return any(vid == vlan_id for _, vid in _held)
    return (ANY_UPLINK, vlan_id) in _held


def _acquire_file_lock(path: Path, key_label: str, shared: bool = False) -> int | None:
    """Take a non-blocking flock; returns the fd or None if locking is unavailable."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError as e:
        logger.warning(f"Cross-process lock unavailable for {key_label} at {path}: {e}")
        return None
    try:
        fcntl.flock(fd, (fcntl.LOCK_SH if shared else fcntl.LOCK_EX) | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        raise SegmentBusyError(
            f"Segment {key_label} is held by another process", resource=key_label
        ) from None
    if not shared:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
    return fd


def _release_file_lock(fd: int | None) -> None:
    if fd is not None:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


@asynccontextmanager
async def segment_lock(physical_if: str, vlan_id: int) -> AsyncIterator[None]:
    """Hold the (physical_if, vlan_id) scope for the duration of the block."""
    key = (physical_if, vlan_id)
    key_label = f"{physical_if or '*'}/{vlan_id}"
    with _held_guard:
        if _conflicts(physical_if, vlan_id):
            raise SegmentBusyError(f"Segment {key_label} is busy in this process", resource=key_label)
        _held.add(key)

    fds: list[int | None] = []
    try:
        wildcard = physical_if == ANY_UPLINK
        fds.append(_acquire_file_lock(_lock_path(ANY_UPLINK, vlan_id), key_label, shared=not wildcard))
        if not wildcard:
            fds.append(_acquire_file_lock(_lock_path(physical_if, vlan_id), key_label))
        logger.debug(f"Acquired segment lock {key_label}")
        yield
    finally:
        for fd in reversed(fds):
            _release_file_lock(fd)
        with _held_guard:
            _held.discard(key)
        logger.debug(f"Released segment lock {key_label}")
