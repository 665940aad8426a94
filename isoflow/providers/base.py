"""Endpoint backend capability interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from isoflow.models import Attachment, AttachmentSpec, BackendKind


class EndpointBackend(ABC):
    """One interface over VM hypervisors and container runtimes.

    The orchestrator never branches on backend kind; everything it needs
    from a backend goes through these methods. Backends hold no record of
    what they created: every query goes to the live hypervisor/runtime.
    """

    kind: BackendKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def create(self, name: str, image: str, spec: AttachmentSpec) -> str:
        """Create and start an endpoint attached per ``spec``.

        Returns a backend handle (domain UUID, container ID).

        Raises:
            EndpointError: the backend refused or failed the create.
        """

    @abstractmethod
    async def destroy(self, name: str) -> bool:
        """Stop and remove an endpoint and its per-endpoint artefacts.

        Returns False if the endpoint did not exist.

        Raises:
            EndpointError: the endpoint exists but could not be removed.
        """

    @abstractmethod
    async def list_names(self, prefix: str) -> list[str]:
        """Names of all endpoints (running or not) starting with prefix."""

    @abstractmethod
    async def running(self, name: str) -> bool:
        """Whether the endpoint exists and is running."""

    @abstractmethod
    async def attachment_of(self, name: str) -> Attachment:
        """Live switch port and MAC of the endpoint.

        Raises:
            EndpointNotRunningError: endpoint absent, stopped, or its
                network device has not appeared yet.
        """

    async def close(self) -> None:
        """Release backend connections."""
