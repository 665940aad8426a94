"""Error taxonomy.

Validation and resolution errors are raised before any host mutation.
Segment and endpoint errors are fatal on create and logged on teardown.
Flow errors are per-endpoint and never abort a batch.
"""

from __future__ import annotations


class IsoflowError(Exception):
    """Base class for all provisioning errors."""

    def __init__(self, message: str, resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class ValidationError(IsoflowError):
    """Bad VLAN, subnet, count or other input."""


class InvalidVlanError(ValidationError):
    pass


class InvalidSubnetError(ValidationError):
    pass


class InvalidCountError(ValidationError):
    pass


class ResolutionError(IsoflowError):
    """An uplink could not be resolved to a host interface."""


class InterfaceNotFoundError(ResolutionError):
    pass


class SegmentError(IsoflowError):
    """VLAN sub-interface create/remove failure."""


class SegmentBusyError(SegmentError):
    """Another run holds the (uplink, vlan) scope."""


class EndpointError(IsoflowError):
    """Backend create/destroy/attach failure."""


class EndpointNotRunningError(EndpointError):
    """Endpoint is absent from the live inventory or has no attachment yet."""


class FlowError(IsoflowError):
    """Flow rule install/remove failure."""
