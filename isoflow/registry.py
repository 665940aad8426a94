"""Lazily built, process-wide backend instances.

``isoflow.providers`` keeps one of these per backend kind, so the libvirt
connection or docker client is opened on first use and shared by every
orchestrator in the process. ``peek`` lets shutdown close only what was
actually created.
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class LazySingleton(Generic[T]):
    """Holds at most one instance, built from ``factory`` on first ``get``.

    A factory that raises leaves the slot empty, so the next ``get``
    retries the build.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._instance: T | None = None

    def get(self) -> T:
        if self._instance is None:
            self._instance = self._factory()
        return self._instance

    def set(self, instance: T) -> None:
        """Install a prebuilt instance (tests, embedding)."""
        self._instance = instance

    def reset(self) -> None:
        self._instance = None

    def peek(self) -> T | None:
        """The instance if one has been built; never calls the factory."""
        return self._instance
