"""Request/response schemas for the CLI and the HTTP agent."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from isoflow import addressing
from isoflow.config import settings
from isoflow.errors import (
    InvalidCountError,
    InvalidSubnetError,
    InvalidVlanError,
    IsoflowError,
    ValidationError,
)
from isoflow.models import BackendKind

MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

# Which error class a failing field maps to
_FIELD_ERRORS: dict[str, type[ValidationError]] = {
    "vlan_id": InvalidVlanError,
    "subnet": InvalidSubnetError,
    "count": InvalidCountError,
}


def _strict_int(value: Any, what: str) -> Any:
    """Accept ints and digit-only strings; reject bools, floats and text."""
    if isinstance(value, bool):
        raise ValueError(f"{what} must be an integer, got {value!r}")
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValueError(f"{what} must be an integer, got {value!r}")
        return int(text)
    if isinstance(value, float):
        raise ValueError(f"{what} must be an integer, got {value!r}")
    return value


class ProvisionRequest(BaseModel):
    """Inputs for one start/stop/status invocation."""

    interface: str | None = Field(None, description="Physical uplink interface name")
    uplink_mac: str | None = Field(None, description="Uplink MAC, resolved to an interface name")
    vlan_id: int = Field(..., ge=1, le=4094, description="VLAN ID (1-4094)")
    subnet: str | None = Field(None, description="Endpoint subnet in CIDR form")
    count: int | None = Field(None, ge=1, description="Number of endpoints")
    backend: BackendKind = BackendKind.VM
    offset: int | None = Field(None, ge=1, description="Address offset override")

    @field_validator("vlan_id", mode="before")
    @classmethod
    def _vlan_is_integer(cls, value: Any) -> Any:
        return _strict_int(value, "VLAN ID")

    @field_validator("count", mode="before")
    @classmethod
    def _count_is_integer(cls, value: Any) -> Any:
        if value is None:
            return value
        return _strict_int(value, "Endpoint count")

    @field_validator("offset", mode="before")
    @classmethod
    def _offset_is_integer(cls, value: Any) -> Any:
        if value is None:
            return value
        return _strict_int(value, "Address offset")

    @field_validator("subnet")
    @classmethod
    def _subnet_is_cidr(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            addressing.parse_subnet(value)
        except IsoflowError as e:
            raise ValueError(str(e)) from e
        return value.strip()

    @field_validator("uplink_mac")
    @classmethod
    def _mac_format(cls, value: str | None) -> str | None:
        if value is None:
            return value
        mac = value.strip().lower().replace("-", ":")
        if not MAC_RE.match(mac):
            raise ValueError(f"Invalid MAC address: {value}")
        return mac

    @field_validator("interface")
    @classmethod
    def _interface_name(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip()
        if not value or len(value) > 15 or "/" in value or " " in value:
            raise ValueError(f"Invalid interface name: {value!r}")
        return value

    @classmethod
    def parse(cls, **raw: Any) -> "ProvisionRequest":
        """Validate raw input, mapping failures onto the error taxonomy."""
        try:
            return cls(**raw)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = str(first["loc"][0]) if first.get("loc") else ""
            error_cls = _FIELD_ERRORS.get(field, ValidationError)
            value = raw.get(field)
            raise error_cls(f"Invalid {field or 'input'} {value!r}: {first['msg']}", resource=field) from e

    @property
    def effective_offset(self) -> int:
        if self.offset is not None:
            return self.offset
        if self.backend == BackendKind.CONTAINER:
            return settings.container_address_offset
        return settings.vm_address_offset

    @property
    def prefix(self) -> str:
        """Name prefix of this scope's endpoints, e.g. ``isoflow-vm-10-``.

        The VLAN is part of the prefix so inventories of different VLANs
        never overlap.
        """
        base = settings.container_prefix if self.backend == BackendKind.CONTAINER else settings.vm_prefix
        return f"{base}{self.vlan_id}-"

    def require_for_start(self) -> None:
        """Start needs an uplink, a subnet and a count."""
        if not self.interface and not self.uplink_mac:
            raise ValidationError("start requires an uplink interface name or MAC", resource="interface")
        if self.subnet is None:
            raise InvalidSubnetError("start requires a subnet", resource="subnet")
        if self.count is None:
            raise InvalidCountError("start requires an endpoint count", resource="count")
        # Fail before any mutation if the last ordinal does not fit
        addressing.allocate(self.subnet, self.effective_offset, self.count)


# --- Responses ---

class AttachmentView(BaseModel):
    port_name: str
    mac: str


class EndpointView(BaseModel):
    name: str
    kind: BackendKind
    ordinal: int | None = None
    running: bool = True
    ip: str | None = None
    attachment: AttachmentView | None = None
    isolated: bool | None = None


class IsolationFailureView(BaseModel):
    endpoint: str
    reason: str


class StartResponse(BaseModel):
    state: str
    segment: str
    endpoints: list[EndpointView] = Field(default_factory=list)
    isolated: list[str] = Field(default_factory=list)
    failures: list[IsolationFailureView] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class StopResponse(BaseModel):
    state: str
    revoked_rules: int = 0
    destroyed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    segment_removed: bool = False
    errors: list[str] = Field(default_factory=list)


class StatusResponse(BaseModel):
    segment: str | None = None
    segment_present: bool = False
    endpoints: list[EndpointView] = Field(default_factory=list)
    managed_rules: int = 0


class ErrorResponse(BaseModel):
    error: str
    detail: str
    resource: str | None = None
