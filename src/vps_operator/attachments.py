"""Attachment differ for network interfaces.

Attachments are matched by topology key (the network they bind to),
never by list position. Moving an attachment within the list without
changing its key produces no change.

The differ partitions the union of desired and observed keys into four
disjoint groups: create, delete, update and unchanged. Updates carry
only the sub-fields that differ.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import NetworkAttachment

logger = logging.getLogger(__name__)

KeyFunc = Callable[[NetworkAttachment], str]

# Mutable sub-fields compared for attachments present on both sides
COMPARED_FIELDS = ("ip_address", "security_group_ids", "floating_ip_id")


def topology_key(attachment: NetworkAttachment) -> str:
    """Default topology key: the attached network."""
    return attachment.network_id


@dataclass(frozen=True)
class FieldChange:
    """Old and new value of one attachment sub-field."""

    old: Any
    new: Any


@dataclass
class AttachmentUpdate:
    """In-place update of an attachment present on both sides."""

    key: str
    changes: dict[str, FieldChange]
    desired: NetworkAttachment
    observed: NetworkAttachment

    @property
    def floating_ip_change(self) -> FieldChange | None:
        """The floating IP binding change, if the binding changed."""
        return self.changes.get("floating_ip_id")

    def interface_fields(self) -> dict[str, Any]:
        """Changed fields applied through the attachment update call."""
        return {
            name: change.new
            for name, change in self.changes.items()
            if name != "floating_ip_id"
        }


@dataclass
class ChangeSet:
    """Partitioned attachment changes, keyed by topology key.

    Partitions are dictionaries, so two change-sets compare equal
    whenever they hold the same keys and deltas, whatever the input order.
    """

    to_create: dict[str, NetworkAttachment] = field(default_factory=dict)
    to_delete: dict[str, NetworkAttachment] = field(default_factory=dict)
    to_update: dict[str, AttachmentUpdate] = field(default_factory=dict)
    unchanged: dict[str, NetworkAttachment] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        """True if any attachment is created, deleted or updated."""
        return bool(self.to_create or self.to_delete or self.to_update)

    def keys(self) -> set[str]:
        """Every topology key covered by the change-set."""
        return (
            set(self.to_create)
            | set(self.to_delete)
            | set(self.to_update)
            | set(self.unchanged)
        )

    def summary(self) -> dict[str, list[str]]:
        """Keys per partition, for logs and plan output."""
        return {
            "create": list(self.to_create),
            "delete": list(self.to_delete),
            "update": list(self.to_update),
            "unchanged": list(self.unchanged),
        }


def _index(attachments: Sequence[NetworkAttachment], key: KeyFunc, side: str) -> dict[str, NetworkAttachment]:
    indexed: dict[str, NetworkAttachment] = {}
    for att in attachments:
        k = key(att)
        if k in indexed:
            raise ValueError(f"Duplicate topology key in {side} attachments: {k}")
        indexed[k] = att
    return indexed


def _compare(desired: NetworkAttachment, observed: NetworkAttachment) -> dict[str, FieldChange]:
    changes: dict[str, FieldChange] = {}

    # A fixed address only counts when the caller asked for one
    if desired.is_explicit("ip_address") and desired.ip_address != observed.ip_address:
        changes["ip_address"] = FieldChange(observed.ip_address, desired.ip_address)

    if set(desired.security_group_ids) != set(observed.security_group_ids):
        changes["security_group_ids"] = FieldChange(
            list(observed.security_group_ids), list(desired.security_group_ids)
        )

    if desired.floating_ip_id != observed.floating_ip_id:
        changes["floating_ip_id"] = FieldChange(observed.floating_ip_id, desired.floating_ip_id)

    return changes


def diff_attachments(
    desired: Sequence[NetworkAttachment],
    observed: Sequence[NetworkAttachment],
    key: KeyFunc = topology_key,
) -> ChangeSet:
    """Compute the change-set between desired and observed attachments.

    Args:
        desired: Attachments as authored. Order carries no meaning.
        observed: Attachments as last persisted.
        key: Topology key extraction function.

    Returns:
        ChangeSet whose partitions cover every key of both lists.

    Raises:
        ValueError: If a list contains the same topology key twice.
    """
    desired_by_key = _index(desired, key, "desired")
    observed_by_key = _index(observed, key, "observed")

    change_set = ChangeSet()

    for k, att in desired_by_key.items():
        if k not in observed_by_key:
            change_set.to_create[k] = att

    for k, att in observed_by_key.items():
        if k not in desired_by_key:
            change_set.to_delete[k] = att

    for k, att in desired_by_key.items():
        current = observed_by_key.get(k)
        if current is None:
            continue
        changes = _compare(att, current)
        if changes:
            change_set.to_update[k] = AttachmentUpdate(
                key=k, changes=changes, desired=att, observed=current
            )
        else:
            change_set.unchanged[k] = current

    logger.debug("Attachment diff computed", extra=change_set.summary())
    return change_set


def order_attachments(
    actual: Sequence[NetworkAttachment],
    reference: Sequence[NetworkAttachment],
    key: KeyFunc = topology_key,
) -> list[NetworkAttachment]:
    """Order attachments returned by the API after a reference list.

    Attachments known to the reference keep its order and its security
    group order; the rest follow sorted by key. Security groups absent
    from the reference are appended sorted.

    Args:
        actual: Attachments as returned by the API.
        reference: Desired list (after create/update) or previous state.
        key: Topology key extraction function.

    Returns:
        A new list; inputs are not modified.
    """
    remaining = {key(att): att for att in actual}
    ordered: list[NetworkAttachment] = []

    for ref in reference:
        k = key(ref)
        att = remaining.pop(k, None)
        if att is None:
            continue

        actual_sgs = set(att.security_group_ids)
        sgs = [sg for sg in ref.security_group_ids if sg in actual_sgs]
        sgs += sorted(actual_sgs - set(sgs))

        updates: dict[str, Any] = {"security_group_ids": sgs}
        if ref.primary is not None:
            updates["primary"] = ref.primary
        ordered.append(att.model_copy(update=updates))

    for k in sorted(remaining):
        att = remaining[k]
        ordered.append(
            att.model_copy(update={"security_group_ids": sorted(att.security_group_ids)})
        )

    return ordered
