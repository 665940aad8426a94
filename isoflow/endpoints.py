"""Read-through endpoint registry.

Nothing is cached between calls: each query goes to the backend's live
inventory, so a fresh invocation sees exactly what exists on the host.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from isoflow import addressing
from isoflow.errors import EndpointNotRunningError, ValidationError
from isoflow.models import Attachment, Endpoint, ordinal_from_name
from isoflow.providers.base import EndpointBackend

logger = logging.getLogger(__name__)


class EndpointRegistry:
    """Enumerates managed endpoints and their network attachments."""

    def __init__(
        self,
        backend: EndpointBackend,
        prefix: str,
        subnet: str | None = None,
        offset: int | None = None,
    ):
        self.backend = backend
        self.prefix = prefix
        self.subnet = subnet
        self.offset = offset

    def _ip_for(self, ordinal: int | None) -> str | None:
        if ordinal is None or self.subnet is None or self.offset is None:
            return None
        try:
            return addressing.allocate(self.subnet, self.offset, ordinal).address
        except ValidationError:
            # Left over from a run with a different subnet/offset
            return None

    async def list_endpoints(self, prefix: str | None = None, with_attachments: bool = False) -> set[Endpoint]:
        """Endpoints whose names start with the prefix."""
        prefix = prefix or self.prefix
        endpoints = set()
        for name in await self.backend.list_names(prefix):
            ordinal = ordinal_from_name(prefix, name)
            endpoint = Endpoint(
                name=name,
                kind=self.backend.kind,
                ordinal=ordinal,
                running=await self.backend.running(name),
                ip=self._ip_for(ordinal),
            )
            if with_attachments and endpoint.running:
                try:
                    endpoint = replace(endpoint, attachment=await self.backend.attachment_of(name))
                except EndpointNotRunningError as e:
                    logger.debug(f"No live attachment for {name}: {e}")
            endpoints.add(endpoint)
        return endpoints

    async def attachment_of(self, endpoint: Endpoint | str) -> Attachment:
        """Current switch port and MAC of an endpoint.

        Raises:
            EndpointNotRunningError: endpoint missing, stopped, or not yet plumbed.
        """
        name = endpoint if isinstance(endpoint, str) else endpoint.name
        if not await self.backend.running(name):
            raise EndpointNotRunningError(f"Endpoint {name} is not running", resource=name)
        return await self.backend.attachment_of(name)
