"""Endpoint backends keyed by kind.

Backends are imported lazily so a host running only containers does not
need libvirt-python, and vice versa.
"""

from __future__ import annotations

import logging

from isoflow.errors import EndpointError
from isoflow.models import BackendKind
from isoflow.providers.base import EndpointBackend
from isoflow.registry import LazySingleton

logger = logging.getLogger(__name__)


def _build_libvirt() -> EndpointBackend:
    try:
        from isoflow.providers.libvirt import LibvirtBackend
    except ImportError as e:
        raise EndpointError(
            f"VM backend unavailable, install isoflow[vm] (libvirt-python): {e}", resource=BackendKind.VM.value,
        ) from e
    return LibvirtBackend()


def _build_docker() -> EndpointBackend:
    from isoflow.providers.docker import DockerBackend
    return DockerBackend()


_backends: dict[BackendKind, LazySingleton[EndpointBackend]] = {
    BackendKind.VM: LazySingleton(_build_libvirt),
    BackendKind.CONTAINER: LazySingleton(_build_docker),
}


def get_backend(kind: BackendKind | str) -> EndpointBackend:
    """Return the backend singleton for a kind."""
    return _backends[BackendKind(kind)].get()


def set_backend(kind: BackendKind | str, backend: EndpointBackend) -> None:
    """Install a specific backend instance for a kind (tests, embedding)."""
    _backends[BackendKind(kind)].set(backend)


def reset_backends() -> None:
    for singleton in _backends.values():
        singleton.reset()


async def close_backends() -> None:
    """Close every backend that has been created, then forget it."""
    for kind, singleton in _backends.items():
        backend = singleton.peek()
        if backend is None:
            continue
        try:
            await backend.close()
        except Exception as e:
            logger.warning(f"Error closing {kind.value} backend: {e}")
        singleton.reset()


__all__ = ["EndpointBackend", "get_backend", "set_backend", "reset_backends", "close_backends"]
