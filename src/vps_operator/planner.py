"""Plan computation.

A plan is the attribute-by-attribute merge of desired configuration and
observed state after policy evaluation. Planning never calls the remote
API. Steps:

1. Diff attachments by topology key
2. Evaluate every server and attachment attribute through its policy
3. Walk the derived-field graph once to mark stale derived fields unresolved

An immutable attribute conflict raises PolicyConflictError from step 2,
so a rejected cycle never reaches the orchestrator's remote calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .attachments import ChangeSet, diff_attachments
from .config import parse_duration
from .dependency import ATTACHMENT_TOPOLOGY, DerivedFieldGraph, graph_from_registry
from .models import NetworkAttachment, ServerSpec, ServerState
from .policies import (
    PolicyContext,
    PolicyRegistry,
    default_attachment_registry,
    default_server_registry,
    is_unknown,
)

logger = logging.getLogger(__name__)

# Flattened server attributes, in evaluation order
SERVER_ATTRIBUTES = (
    "id",
    "name",
    "flavor_id",
    "image_id",
    "description",
    "keypair",
    "password",
    "user_data",
    "wait_for_active",
    "wait_for_deleted",
    "timeouts.create",
    "timeouts.update",
    "timeouts.delete",
    "status",
    "created_at",
    "ip_addresses",
)

ATTACHMENT_ATTRIBUTES = (
    "network_id",
    "ip_address",
    "primary",
    "security_group_ids",
    "floating_ip_id",
    "floating_ip",
)

# Top-level fields the API can change in place with a single update call
MUTABLE_FIELDS = ("name", "description")

UNKNOWN_DISPLAY = "(known after apply)"


class Operation(str, Enum):
    """Lifecycle operation requested for a server."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def flatten(model: ServerSpec | ServerState) -> dict[str, Any]:
    """Flatten a server model into plan attribute names.

    Nested timeouts become dotted names; attachments are left out.
    """
    data = model.model_dump()
    data.pop("network_attachments", None)
    timeouts = data.pop("timeouts", {}) or {}
    for step, value in timeouts.items():
        data[f"timeouts.{step}"] = value
    return {name: data.get(name) for name in SERVER_ATTRIBUTES}


def explicit_attributes(spec: ServerSpec) -> set[str]:
    """Attributes the caller set explicitly in a desired configuration."""
    explicit = {name for name in spec.model_fields_set if name != "timeouts"}
    if "timeouts" in spec.model_fields_set:
        explicit |= {f"timeouts.{step}" for step in spec.timeouts.model_fields_set}
    return explicit


def _display(value: Any) -> Any:
    if is_unknown(value):
        return UNKNOWN_DISPLAY
    if isinstance(value, list):
        return [_display(v) for v in value]
    return value


@dataclass
class Plan:
    """Intended next state of a server, computed before any remote call.

    Attributes:
        operation: Requested lifecycle operation.
        attributes: Planned server attributes (flattened, may hold UNKNOWN).
        attachments: Planned attachment values in desired order.
        change_set: Attachment changes against the observed state.
        changed_fields: Mutable top-level fields that differ from observed.
    """

    operation: Operation
    attributes: dict[str, Any]
    attachments: list[dict[str, Any]] = field(default_factory=list)
    change_set: ChangeSet = field(default_factory=ChangeSet)
    changed_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        """True if applying the plan requires any remote call."""
        if self.operation != Operation.UPDATE:
            return True
        return self.change_set.has_changes or bool(self.changed_fields)

    @property
    def unresolved(self) -> list[str]:
        """Server attributes that will only be known after apply."""
        return [name for name, value in self.attributes.items() if is_unknown(value)]

    def is_unknown(self, attribute: str) -> bool:
        """Check whether an attribute is unresolved in this plan."""
        return is_unknown(self.attributes.get(attribute))

    def timeout_seconds(self, step: str) -> float | None:
        """Planned deadline for a lifecycle step, if known."""
        value = self.attributes.get(f"timeouts.{step}")
        if value is None or is_unknown(value):
            return None
        return parse_duration(value)

    def to_dict(self) -> dict[str, Any]:
        """Render the plan as plain data; unresolved values are labelled."""
        return {
            "operation": self.operation.value,
            "attributes": {k: _display(v) for k, v in self.attributes.items()},
            "network_attachments": [
                {k: _display(v) for k, v in att.items()} for att in self.attachments
            ],
            "changes": {
                "fields": dict(self.changed_fields),
                "attachments": self.change_set.summary(),
            },
        }


class Planner:
    """Computes plans from desired configuration and observed state."""

    def __init__(
        self,
        server_policies: PolicyRegistry | None = None,
        attachment_policies: PolicyRegistry | None = None,
        graph: DerivedFieldGraph | None = None,
    ) -> None:
        self._server_policies = server_policies or default_server_registry()
        self._attachment_policies = attachment_policies or default_attachment_registry()
        self._graph = graph or graph_from_registry(self._server_policies)

    def plan(
        self,
        operation: Operation,
        desired: ServerSpec | None,
        observed: ServerState | None,
    ) -> Plan:
        """Compute the plan for one reconciliation request.

        Args:
            operation: Requested lifecycle operation.
            desired: Desired configuration (None when deleting).
            observed: Observed state (None when creating).

        Returns:
            The computed plan.

        Raises:
            PolicyConflictError: If an immutable attribute would change.
            ValueError: If the request is missing the inputs its operation needs.
        """
        match operation:
            case Operation.DELETE:
                if observed is None:
                    raise ValueError("Deleting requires an observed state")
                return self._plan_delete(observed)
            case Operation.CREATE:
                if desired is None:
                    raise ValueError("Creating requires a desired configuration")
                return self._plan_apply(operation, desired, None)
            case Operation.UPDATE:
                if desired is None or observed is None:
                    raise ValueError("Updating requires desired configuration and observed state")
                return self._plan_apply(operation, desired, observed)

        raise ValueError(f"Unsupported operation: {operation}")

    def _plan_delete(self, observed: ServerState) -> Plan:
        context = PolicyContext(destroying=True)
        current = flatten(observed)
        attributes = {
            name: self._server_policies.apply(name, value, value, context)
            for name, value in current.items()
        }
        return Plan(
            operation=Operation.DELETE,
            attributes=attributes,
            attachments=[att.model_dump() for att in observed.network_attachments],
        )

    def _plan_apply(
        self,
        operation: Operation,
        desired: ServerSpec,
        observed: ServerState | None,
    ) -> Plan:
        creating = observed is None
        observed_attachments = observed.network_attachments if observed else []

        change_set = diff_attachments(desired.network_attachments, observed_attachments)
        changed_sources: set[str] = set()
        if change_set.has_changes:
            changed_sources.add(ATTACHMENT_TOPOLOGY)

        wanted = flatten(desired)
        current = flatten(observed) if observed else dict.fromkeys(SERVER_ATTRIBUTES)
        explicit = explicit_attributes(desired)

        attributes: dict[str, Any] = {}
        for name in SERVER_ATTRIBUTES:
            policy = self._server_policies.get(name)
            depends_on = policy.depends_on if policy else ()
            context = PolicyContext(
                creating=creating,
                explicit=name in explicit,
                dependency_changed=any(dep in changed_sources for dep in depends_on),
            )
            attributes[name] = self._server_policies.apply(
                name, wanted[name], current[name], context
            )

        attributes = self._graph.propagate(attributes, changed_sources)

        attachments = [
            self._plan_attachment(att, observed.attachment(att.network_id) if observed else None)
            for att in desired.network_attachments
        ]

        changed_fields: dict[str, Any] = {}
        if not creating:
            for name in MUTABLE_FIELDS:
                if attributes[name] != current[name]:
                    changed_fields[name] = attributes[name]

        plan = Plan(
            operation=operation,
            attributes=attributes,
            attachments=attachments,
            change_set=change_set,
            changed_fields=changed_fields,
        )
        logger.info(
            "Plan computed",
            extra={
                "operation": operation.value,
                "server": desired.name,
                "has_changes": plan.has_changes,
                "changed_fields": sorted(changed_fields),
                "unresolved": plan.unresolved,
                **{f"attachments_{k}": v for k, v in change_set.summary().items()},
            },
        )
        return plan

    def _plan_attachment(
        self,
        desired: NetworkAttachment,
        observed: NetworkAttachment | None,
    ) -> dict[str, Any]:
        wanted = desired.model_dump()
        current = observed.model_dump() if observed else dict.fromkeys(ATTACHMENT_ATTRIBUTES)
        changed = {
            name
            for name in ATTACHMENT_ATTRIBUTES
            if observed is not None and wanted[name] != current[name]
        }

        planned: dict[str, Any] = {}
        for name in ATTACHMENT_ATTRIBUTES:
            policy = self._attachment_policies.get(name)
            depends_on = policy.depends_on if policy else ()
            context = PolicyContext(
                creating=observed is None,
                explicit=desired.is_explicit(name),
                dependency_changed=any(dep in changed for dep in depends_on),
            )
            planned[name] = self._attachment_policies.apply(
                name, wanted[name], current[name], context
            )
        return planned
