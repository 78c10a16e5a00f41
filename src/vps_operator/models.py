"""Pydantic models for server desired configuration and observed state.

These models provide:
1. Type-safe YAML parsing of desired configurations
2. Validation at the boundary (fail fast, fail loudly)
3. A canonical representation of servers as returned by the API
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import ConfigurationError, parse_duration


class ServerStatus(str, Enum):
    """Server statuses reported by the compute API."""

    BUILDING = "building"
    ACTIVE = "active"
    SHUTOFF = "shutoff"
    ERROR = "error"
    DELETING = "deleting"


# =============================================================================
# Shared blocks
# =============================================================================


class Timeouts(BaseModel):
    """Per-step wait deadlines as duration strings ("10m", "1h30m").

    Unset steps fall back to the operator defaults.
    """

    model_config = {"extra": "ignore"}

    create: str | None = None
    update: str | None = None
    delete: str | None = None

    @field_validator("create", "update", "delete")
    @classmethod
    def validate_duration(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            parse_duration(v)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
        return v

    def seconds(self, step: str) -> float | None:
        """Return the deadline for a lifecycle step in seconds, if set."""
        value = getattr(self, step)
        return None if value is None else parse_duration(value)


class NetworkAttachment(BaseModel):
    """One network interface of a server.

    The attachment is identified by its topology key, the network it binds
    to, never by its position in the list.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    network_id: Annotated[str, Field(min_length=1, alias="networkId")]
    ip_address: str | None = Field(None, alias="ipAddress")
    primary: bool | None = None
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIds")
    floating_ip_id: str | None = Field(None, alias="floatingIpId")

    # Computed: address of the bound floating IP
    floating_ip: str | None = Field(None, alias="floatingIp")

    @field_validator("ip_address")
    @classmethod
    def validate_ipv4(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"ip_address must be a valid IPv4 address: {v}") from e
        return v

    @field_validator("security_group_ids")
    @classmethod
    def validate_security_groups(cls, v: list[str]) -> list[str]:
        if any(not sg for sg in v):
            raise ValueError("security_group_ids cannot contain empty values")
        return v

    @field_validator("floating_ip_id")
    @classmethod
    def validate_floating_ip_id(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("floating_ip_id cannot be empty")
        return v

    @property
    def key(self) -> str:
        """Topology key of this attachment."""
        return self.network_id

    def is_explicit(self, field_name: str) -> bool:
        """Check whether the caller set a sub-field explicitly."""
        return field_name in self.model_fields_set and getattr(self, field_name) is not None


def _check_attachments(attachments: list[NetworkAttachment]) -> None:
    seen: set[str] = set()
    for att in attachments:
        if att.network_id in seen:
            raise ValueError(f"network_id must be unique across attachments: {att.network_id}")
        seen.add(att.network_id)

    primaries = [att.network_id for att in attachments if att.primary]
    if len(primaries) > 1:
        raise ValueError(f"At most one attachment can be primary, got {primaries}")

    bound: dict[str, str] = {}
    for att in attachments:
        if att.floating_ip_id is None:
            continue
        if att.floating_ip_id in bound:
            raise ValueError(
                f"Floating IP {att.floating_ip_id} is bound to both "
                f"{bound[att.floating_ip_id]} and {att.network_id}"
            )
        bound[att.floating_ip_id] = att.network_id


# =============================================================================
# Desired configuration
# =============================================================================


class ServerSpec(BaseModel):
    """Desired configuration of a server as declared by the caller."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    flavor_id: Annotated[str, Field(min_length=1, alias="flavorId")]
    image_id: Annotated[str, Field(min_length=1, alias="imageId")]
    network_attachments: Annotated[
        list[NetworkAttachment], Field(min_length=1, alias="networkAttachments")
    ]

    description: str | None = None
    keypair: str | None = None
    password: str | None = None
    user_data: str | None = Field(None, alias="userData")

    # Runtime-only behavior, never sent to the API
    wait_for_active: bool = Field(True, alias="waitForActive")
    wait_for_deleted: bool = Field(True, alias="waitForDeleted")
    timeouts: Timeouts = Field(default_factory=Timeouts)

    @model_validator(mode="after")
    def validate_attachments(self) -> ServerSpec:
        _check_attachments(self.network_attachments)
        return self


# =============================================================================
# Observed state
# =============================================================================


class ServerState(BaseModel):
    """Observed state of a server.

    Normally the API representation of the server at the last read,
    merged with the attributes the API never returns (secrets and
    runtime-only settings).
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Annotated[str, Field(min_length=1)]
    name: str
    flavor_id: str = Field(alias="flavorId")
    image_id: str = Field(alias="imageId")
    network_attachments: list[NetworkAttachment] = Field(
        default_factory=list, alias="networkAttachments"
    )

    description: str | None = None
    keypair: str | None = None
    password: str | None = None
    user_data: str | None = Field(None, alias="userData")

    status: str | None = None
    created_at: str | None = Field(None, alias="createdAt")
    ip_addresses: list[str] = Field(default_factory=list, alias="ipAddresses")

    wait_for_active: bool = Field(True, alias="waitForActive")
    wait_for_deleted: bool = Field(True, alias="waitForDeleted")
    timeouts: Timeouts = Field(default_factory=Timeouts)

    def attachment(self, network_id: str) -> NetworkAttachment | None:
        """Return the attachment bound to a network, if any."""
        for att in self.network_attachments:
            if att.network_id == network_id:
                return att
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain data for storage."""
        return self.model_dump(mode="json")
