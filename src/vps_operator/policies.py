"""Attribute-level reconciliation policies.

Every policy-governed attribute is declared once in a registry that maps
the attribute name to one of four policy kinds. A single dispatch
function evaluates any policy uniformly:

- IMMUTABLE: changes after creation are rejected with PolicyConflictError
- IGNORE_AFTER_CREATE: changes after creation are replaced by the observed value
- RECOMPUTE_ON_DEPENDENCY: derived values become unresolved when their
  dependency changed, otherwise the observed value is kept
- PRESERVE_UNLESS_EXPLICIT: computed values keep the observed value unless
  the caller set one explicitly

Evaluators never mutate their inputs. Only IMMUTABLE can fail, and its
failure aborts the cycle before any remote call is issued.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class _Unknown:
    """Marker for a value that cannot be determined until after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unknown>"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Unknown:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()


def is_unknown(value: Any) -> bool:
    """Check whether a plan value is unresolved."""
    return value is UNKNOWN


class PolicyKind(str, Enum):
    """Supported attribute mutation policies."""

    IMMUTABLE = "immutable"
    IGNORE_AFTER_CREATE = "ignore_after_create"
    RECOMPUTE_ON_DEPENDENCY = "recompute_on_dependency"
    PRESERVE_UNLESS_EXPLICIT = "preserve_unless_explicit"


class PolicyConflictError(Exception):
    """Raised when an immutable attribute's desired value differs from observed."""

    def __init__(self, attribute: str, desired: Any, observed: Any) -> None:
        self.attribute = attribute
        self.desired = desired
        self.observed = observed
        super().__init__(
            f"Unsupported change: '{attribute}' cannot be changed in place "
            f"(observed {observed!r}, desired {desired!r}). "
            "Recreate the server to change this attribute."
        )


@dataclass(frozen=True)
class PolicyContext:
    """Flags describing the situation an attribute is evaluated in.

    Attributes:
        creating: The resource does not exist yet.
        destroying: The resource is being deleted.
        explicit: The caller supplied the desired value.
        dependency_changed: A field this attribute derives from changed.
    """

    creating: bool = False
    destroying: bool = False
    explicit: bool = True
    dependency_changed: bool = False


@dataclass(frozen=True)
class AttributePolicy:
    """Binds one attribute to a policy kind.

    Attributes:
        attribute: Attribute name; nested attributes use dotted names
                   ("timeouts.create").
        kind: Policy applied when planning.
        depends_on: Fields a RECOMPUTE_ON_DEPENDENCY attribute derives from.
        reason: Human-readable explanation for logs and plan output.
    """

    attribute: str
    kind: PolicyKind
    depends_on: tuple[str, ...] = ()
    reason: str = ""


def evaluate(
    policy: AttributePolicy,
    desired: Any,
    observed: Any,
    context: PolicyContext,
) -> Any:
    """Decide the value to carry into the plan for one attribute.

    Args:
        policy: Policy governing the attribute.
        desired: Value from the desired configuration (may be UNKNOWN).
        observed: Value from the observed state (None when absent).
        context: Creation/destruction/explicitness flags.

    Returns:
        The planned value, possibly UNKNOWN.

    Raises:
        PolicyConflictError: If an IMMUTABLE attribute changes on an
            existing resource.
    """
    if is_unknown(desired):
        return UNKNOWN

    if context.destroying:
        return desired

    # An absent observed value always means creation semantics
    creating = context.creating or observed is None

    match policy.kind:
        case PolicyKind.IMMUTABLE:
            if creating:
                return desired
            if desired != observed:
                raise PolicyConflictError(policy.attribute, desired, observed)
            return observed

        case PolicyKind.IGNORE_AFTER_CREATE:
            if creating:
                return desired
            if desired != observed:
                logger.debug(
                    "Ignoring change after create",
                    extra={"attribute": policy.attribute, "reason": policy.reason},
                )
            return observed

        case PolicyKind.RECOMPUTE_ON_DEPENDENCY:
            if creating or context.dependency_changed:
                return UNKNOWN
            return observed

        case PolicyKind.PRESERVE_UNLESS_EXPLICIT:
            if not context.explicit:
                return UNKNOWN if creating else observed
            return desired

    raise ValueError(f"Unsupported policy kind: {policy.kind}")


class PolicyRegistry:
    """Data-driven table of attribute policies for one resource scope."""

    def __init__(self, policies: Iterable[AttributePolicy] = ()) -> None:
        self._policies: dict[str, AttributePolicy] = {}
        for policy in policies:
            self.register(policy)

    def register(self, policy: AttributePolicy) -> None:
        """Add or replace the policy for an attribute."""
        self._policies[policy.attribute] = policy

    def get(self, attribute: str) -> AttributePolicy | None:
        """Return the policy for an attribute, if one is declared."""
        return self._policies.get(attribute)

    def by_kind(self, kind: PolicyKind) -> list[str]:
        """Return the attributes governed by a policy kind, in declaration order."""
        return [name for name, policy in self._policies.items() if policy.kind == kind]

    def __contains__(self, attribute: object) -> bool:
        return attribute in self._policies

    def __iter__(self) -> Iterator[AttributePolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def apply(
        self,
        attribute: str,
        desired: Any,
        observed: Any,
        context: PolicyContext,
    ) -> Any:
        """Evaluate an attribute through its policy.

        Attributes without a declared policy carry the desired value.
        """
        policy = self._policies.get(attribute)
        if policy is None:
            return desired

        value = evaluate(policy, desired, observed, context)
        logger.debug(
            "Policy evaluated",
            extra={
                "attribute": attribute,
                "policy": policy.kind.value,
                "planned": repr(value),
            },
        )
        return value


# Server attributes. Runtime-only attributes (wait flags, timeouts) only
# affect how the operator behaves and are never sent to the API.
DEFAULT_SERVER_POLICIES: list[AttributePolicy] = [
    AttributePolicy(
        attribute="id",
        kind=PolicyKind.PRESERVE_UNLESS_EXPLICIT,
        reason="Identity is assigned by the API",
    ),
    AttributePolicy(
        attribute="flavor_id",
        kind=PolicyKind.IMMUTABLE,
        reason="Resizing is a platform operation, not an in-place update",
    ),
    AttributePolicy(
        attribute="image_id",
        kind=PolicyKind.IMMUTABLE,
        reason="Changing the image requires reprovisioning",
    ),
    AttributePolicy(
        attribute="keypair",
        kind=PolicyKind.IMMUTABLE,
        reason="Keypair is injected at boot",
    ),
    AttributePolicy(
        attribute="password",
        kind=PolicyKind.IMMUTABLE,
        reason="Password is injected at boot",
    ),
    AttributePolicy(
        attribute="user_data",
        kind=PolicyKind.IMMUTABLE,
        reason="Boot script only runs on first boot",
    ),
    AttributePolicy(
        attribute="wait_for_active",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="Only used while creating",
    ),
    AttributePolicy(
        attribute="wait_for_deleted",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="Only used while deleting",
    ),
    AttributePolicy(
        attribute="timeouts.create",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="Runtime-only timeout",
    ),
    AttributePolicy(
        attribute="timeouts.update",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="Runtime-only timeout",
    ),
    AttributePolicy(
        attribute="timeouts.delete",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="Runtime-only timeout",
    ),
    AttributePolicy(
        attribute="status",
        kind=PolicyKind.PRESERVE_UNLESS_EXPLICIT,
        reason="Status is reported by the API",
    ),
    AttributePolicy(
        attribute="created_at",
        kind=PolicyKind.PRESERVE_UNLESS_EXPLICIT,
        reason="Creation timestamp is reported by the API",
    ),
    AttributePolicy(
        attribute="ip_addresses",
        kind=PolicyKind.RECOMPUTE_ON_DEPENDENCY,
        depends_on=("network_attachments",),
        reason="Addresses are reassigned when the network topology changes",
    ),
]

# Attributes of a single network attachment
DEFAULT_ATTACHMENT_POLICIES: list[AttributePolicy] = [
    AttributePolicy(
        attribute="ip_address",
        kind=PolicyKind.PRESERVE_UNLESS_EXPLICIT,
        reason="DHCP-assigned unless a fixed address is requested",
    ),
    AttributePolicy(
        attribute="primary",
        kind=PolicyKind.IGNORE_AFTER_CREATE,
        reason="The primary interface cannot be switched in place",
    ),
    AttributePolicy(
        attribute="floating_ip",
        kind=PolicyKind.RECOMPUTE_ON_DEPENDENCY,
        depends_on=("floating_ip_id",),
        reason="Public address follows the bound floating IP",
    ),
]


def default_server_registry() -> PolicyRegistry:
    """Create the policy registry for server attributes."""
    return PolicyRegistry(DEFAULT_SERVER_POLICIES)


def default_attachment_registry() -> PolicyRegistry:
    """Create the policy registry for network attachment attributes."""
    return PolicyRegistry(DEFAULT_ATTACHMENT_POLICIES)
