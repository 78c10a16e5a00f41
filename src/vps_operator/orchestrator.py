"""Lifecycle orchestration for servers and their network attachments.

The orchestrator consumes a plan and issues the remote calls it implies,
strictly one after another:

Create:  create server -> wait for active (if requested or floating IPs
         are bound) -> associate floating IPs -> re-read
Update:  release floating IPs of deleted/changed attachments, detach
         deleted NICs -> attach new NICs -> update changed NICs ->
         associate floating IPs -> update top-level fields -> wait -> re-read
Delete:  delete server -> wait for absence (if requested)

Policy conflicts are raised while planning, before any remote call.
Nothing applied earlier in a cycle is rolled back. When a step fails or
a wait times out, reconcile() re-reads the server and returns that state
with the error, so the next cycle replans from what was actually applied.
"""

from __future__ import annotations

import asyncio
import base64
import functools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .attachments import order_attachments
from .client import ComputeAPI
from .config import Config
from .models import NetworkAttachment, ServerSpec, ServerState, Timeouts
from .planner import Operation, Plan, Planner
from .policies import PolicyConflictError
from .waiter import (
    Clock,
    ConvergenceTarget,
    ConvergenceTimeoutError,
    ConvergenceWaiter,
    Sleep,
)

logger = logging.getLogger(__name__)


class PartialUpdateError(Exception):
    """Raised when a remote step fails after the cycle started changing the server.

    Steps applied before the failure stay applied. The underlying error
    is chained as __cause__.
    """

    def __init__(
        self,
        step: str,
        attachment_key: str | None,
        cause: Exception,
        *,
        server_id: str | None = None,
    ) -> None:
        self.step = step
        self.attachment_key = attachment_key
        self.cause = cause
        self.server_id = server_id
        target = f" for attachment {attachment_key}" if attachment_key else ""
        super().__init__(f"Update step '{step}'{target} failed: {cause}")


@dataclass
class ReconcileRequest:
    """One reconciliation request.

    Attributes:
        operation: Requested lifecycle operation.
        desired: Desired configuration (None when deleting).
        observed: Observed state (None when creating).
        wait: Synchronous-wait flag; None follows the configuration's
              wait_for_active / wait_for_deleted.
        timeout_seconds: Waiter deadline; None follows the configuration's
                         timeouts, then the operator defaults.
    """

    operation: Operation
    desired: ServerSpec | None = None
    observed: ServerState | None = None
    wait: bool | None = None
    timeout_seconds: float | None = None

    @property
    def name(self) -> str:
        if self.desired is not None:
            return self.desired.name
        if self.observed is not None:
            return self.observed.name
        return ""


@dataclass
class ReconcileResult:
    """Result of a single reconciliation request.

    ``applied`` is set whenever ``state`` is a fresh observed state to
    persist. That includes a failed cycle after which the server was
    re-read, so the next cycle replans from what was actually applied.
    """

    server: str
    operation: Operation
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    state: ServerState | None = None
    applied: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


def _encode(value: str | None) -> str | None:
    if value is None:
        return None
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _carried_from_plan(plan: Plan) -> dict[str, Any]:
    """Attributes the API never returns, taken from the plan."""
    attrs = plan.attributes
    return {
        "password": attrs["password"],
        "user_data": attrs["user_data"],
        "wait_for_active": attrs["wait_for_active"],
        "wait_for_deleted": attrs["wait_for_deleted"],
        "timeouts": Timeouts(
            create=attrs["timeouts.create"],
            update=attrs["timeouts.update"],
            delete=attrs["timeouts.delete"],
        ),
    }


def _carried_from_state(state: ServerState) -> dict[str, Any]:
    """Attributes the API never returns, taken from a previous state."""
    return {
        "password": state.password,
        "user_data": state.user_data,
        "wait_for_active": state.wait_for_active,
        "wait_for_deleted": state.wait_for_deleted,
        "timeouts": state.timeouts.model_copy(),
    }


def merge_state(
    remote: ServerState,
    reference: list[NetworkAttachment],
    carried: dict[str, Any],
    keypair: str | None = None,
) -> ServerState:
    """Merge a fresh API representation into a storable observed state.

    Attachments follow the reference order; secrets and runtime-only
    settings come from ``carried``.
    """
    updates = dict(carried)
    updates["network_attachments"] = order_attachments(remote.network_attachments, reference)
    if remote.keypair is None and keypair is not None:
        updates["keypair"] = keypair
    return remote.model_copy(update=updates)


class ServerOrchestrator:
    """Sequences remote calls for server lifecycle operations.

    Remote calls are blocking and run in the default executor, one at a
    time. Independent orchestrations may run concurrently.
    """

    def __init__(
        self,
        api: ComputeAPI,
        config: Config,
        planner: Planner | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api = api
        self._config = config
        self._planner = planner or Planner()
        self._clock = clock
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """Plan and apply one request, capturing failures in the result.

        Never raises for policy conflicts, remote errors, partial updates
        or convergence timeouts; they are returned in ``result.error``.
        """
        result = ReconcileResult(server=request.name, operation=request.operation)

        try:
            plan = self._planner.plan(request.operation, request.desired, request.observed)
            result.plan = plan

            if self._config.dry_run:
                logger.info(
                    "Dry run, plan not applied",
                    extra={"server": result.server, "operation": request.operation.value},
                )
                result.state = request.observed
            else:
                result.state = await self._apply(plan, request)
                result.applied = True

        except (
            PolicyConflictError,
            PartialUpdateError,
            ConvergenceTimeoutError,
            AzureError,
            ValueError,
        ) as e:
            result.error = e
            logger.error(
                "Reconciliation failed",
                extra={
                    "server": result.server,
                    "operation": request.operation.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            if result.plan is not None and isinstance(
                e, (PartialUpdateError, ConvergenceTimeoutError)
            ):
                server_id = e.server_id if isinstance(e, PartialUpdateError) else e.resource_id
                if server_id and request.operation != Operation.DELETE:
                    result.state = await self._recover(server_id, result.plan, request)
                    result.applied = result.state is not None

        result.end_time = datetime.now(UTC)
        return result

    async def _recover(
        self, server_id: str, plan: Plan, request: ReconcileRequest
    ) -> ServerState | None:
        """Re-read a server after a failed cycle so the next one replans from it.

        When the re-read of a just-created server fails too, the requested
        configuration stands in for it so the server's identity is kept.
        """
        assert request.desired is not None
        desired = request.desired
        keypair = request.observed.keypair if request.observed is not None else desired.keypair

        try:
            remote = await self._call("read", self._api.read, server_id, server_id=server_id)
        except AzureError as e:
            logger.warning(
                "Re-read after failure failed",
                extra={"server_id": server_id, "error_type": type(e).__name__, "error": str(e)},
            )
            if request.operation != Operation.CREATE:
                return None
            remote = ServerState(
                id=server_id,
                name=desired.name,
                flavor_id=desired.flavor_id,
                image_id=desired.image_id,
                description=desired.description,
                network_attachments=[
                    att.model_copy(update={"floating_ip_id": None, "floating_ip": None})
                    for att in desired.network_attachments
                ],
            )

        state = merge_state(
            remote, desired.network_attachments, _carried_from_plan(plan), keypair=keypair
        )
        logger.info(
            "Observed state recovered after failure",
            extra={"server_id": server_id, "status": state.status},
        )
        return state

    async def _apply(self, plan: Plan, request: ReconcileRequest) -> ServerState | None:
        match plan.operation:
            case Operation.CREATE:
                assert request.desired is not None
                return await self._apply_create(
                    plan, request.desired, request.wait, request.timeout_seconds
                )
            case Operation.UPDATE:
                assert request.desired is not None and request.observed is not None
                return await self._apply_update(
                    plan, request.desired, request.observed, request.wait, request.timeout_seconds
                )
            case Operation.DELETE:
                assert request.observed is not None
                await self._apply_delete(
                    plan, request.observed, request.wait, request.timeout_seconds
                )
                return None
        raise ValueError(f"Unsupported operation: {plan.operation}")

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    async def create(
        self,
        desired: ServerSpec,
        *,
        wait: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> ServerState:
        """Create a server.

        Returns:
            The new observed state. Without waiting its status is
            whatever the API reported, typically still building.

        Raises:
            ConvergenceTimeoutError: If the server did not become active in time.
            AzureError: If a remote call failed.
        """
        plan = self._planner.plan(Operation.CREATE, desired, None)
        return await self._apply_create(plan, desired, wait, timeout_seconds)

    async def update(
        self,
        desired: ServerSpec,
        observed: ServerState,
        *,
        wait: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> ServerState:
        """Bring an existing server to its desired configuration.

        Raises:
            PolicyConflictError: If an immutable attribute changed. No
                remote call is issued.
            PartialUpdateError: If a step failed after earlier steps applied.
            ConvergenceTimeoutError: If the server did not become active in time.
            AzureError: If a remote call failed before any change was applied.
        """
        plan = self._planner.plan(Operation.UPDATE, desired, observed)
        return await self._apply_update(plan, desired, observed, wait, timeout_seconds)

    async def delete(
        self,
        observed: ServerState,
        *,
        wait: bool | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        """Delete a server. A server that is already gone counts as deleted.

        Raises:
            ConvergenceTimeoutError: If the server was still present at the deadline.
            AzureError: If the delete call failed.
        """
        plan = self._planner.plan(Operation.DELETE, None, observed)
        await self._apply_delete(plan, observed, wait, timeout_seconds)

    async def refresh(self, observed: ServerState) -> ServerState:
        """Re-read a server and merge it with its previous state.

        Raises:
            ResourceNotFoundError: If the server no longer exists.
        """
        remote = await self._call("read", self._api.read, observed.id, server_id=observed.id)
        return merge_state(
            remote,
            observed.network_attachments,
            _carried_from_state(observed),
            keypair=observed.keypair,
        )

    async def import_server(self, server_id: str) -> ServerState:
        """Adopt an existing server.

        Secrets are unknown and runtime settings start at their defaults.

        Raises:
            ResourceNotFoundError: If no server has this ID.
        """
        remote = await self._call("read", self._api.read, server_id, server_id=server_id)
        state = merge_state(
            remote,
            [],
            {
                "password": None,
                "user_data": None,
                "wait_for_active": True,
                "wait_for_deleted": True,
                "timeouts": Timeouts(),
            },
        )
        logger.info("Server imported", extra={"server_id": server_id, "server": state.name})
        return state

    # -------------------------------------------------------------------------
    # Plan application
    # -------------------------------------------------------------------------

    async def _apply_create(
        self,
        plan: Plan,
        desired: ServerSpec,
        wait: bool | None,
        timeout_seconds: float | None,
    ) -> ServerState:
        fields: dict[str, Any] = {
            "name": desired.name,
            "flavor_id": desired.flavor_id,
            "image_id": desired.image_id,
        }
        optional = {
            "description": desired.description,
            "keypair": desired.keypair,
            "password": _encode(desired.password),
            "user_data": _encode(desired.user_data),
        }
        fields.update({k: v for k, v in optional.items() if v is not None})

        remote = await self._call(
            "create",
            self._api.create,
            fields,
            list(desired.network_attachments),
            server=desired.name,
        )
        server_id = remote.id

        should_wait = plan.attributes["wait_for_active"] if wait is None else wait
        floating = [att for att in desired.network_attachments if att.floating_ip_id]

        # Floating IPs can only be bound to an active server
        if should_wait or floating:
            await self._wait(
                server_id, ConvergenceTarget.ACTIVE, self._timeout("create", plan, timeout_seconds)
            )
            for att in floating:
                await self._step(
                    server_id,
                    "associate",
                    att.key,
                    self._api.associate,
                    att.floating_ip_id,
                    server_id,
                    att.key,
                )
            remote = await self._call("read", self._api.read, server_id, server_id=server_id)

        state = merge_state(
            remote,
            desired.network_attachments,
            _carried_from_plan(plan),
            keypair=desired.keypair,
        )
        logger.info(
            "Server created",
            extra={"server_id": server_id, "server": desired.name, "status": state.status},
        )
        return state

    async def _apply_update(
        self,
        plan: Plan,
        desired: ServerSpec,
        observed: ServerState,
        wait: bool | None,
        timeout_seconds: float | None,
    ) -> ServerState:
        server_id = observed.id
        carried = _carried_from_plan(plan)

        if not plan.has_changes:
            logger.info("No changes, update skipped", extra={"server_id": server_id})
            return merge_state(
                observed, desired.network_attachments, carried, keypair=observed.keypair
            )

        change_set = plan.change_set
        applied = 0

        # Release every floating IP that is going away before anything else,
        # so an address moving to another attachment is never bound twice
        for key, att in change_set.to_delete.items():
            if att.floating_ip_id:
                await self._step(
                    server_id, "disassociate", key, self._api.disassociate, att.floating_ip_id
                )
                applied += 1
            await self._step(server_id, "detach", key, self._api.detach, server_id, key)
            applied += 1

        for key, update in change_set.to_update.items():
            change = update.floating_ip_change
            if change is not None and change.old:
                await self._step(
                    server_id, "disassociate", key, self._api.disassociate, change.old
                )
                applied += 1

        for key, att in change_set.to_create.items():
            await self._step(server_id, "attach", key, self._api.attach, server_id, att)
            applied += 1

        for key, update in change_set.to_update.items():
            interface_fields = update.interface_fields()
            if interface_fields:
                await self._step(
                    server_id,
                    "update_attachment",
                    key,
                    self._api.update_attachment,
                    server_id,
                    key,
                    interface_fields,
                )
                applied += 1

        bindings = [
            (key, att.floating_ip_id)
            for key, att in change_set.to_create.items()
            if att.floating_ip_id
        ]
        bindings += [
            (key, update.floating_ip_change.new)
            for key, update in change_set.to_update.items()
            if update.floating_ip_change is not None and update.floating_ip_change.new
        ]
        for key, floating_ip_id in bindings:
            await self._step(
                server_id, "associate", key, self._api.associate, floating_ip_id, server_id, key
            )
            applied += 1

        if plan.changed_fields:
            try:
                await self._call(
                    "update",
                    self._api.update,
                    server_id,
                    dict(plan.changed_fields),
                    server_id=server_id,
                )
            except AzureError as e:
                if applied:
                    raise PartialUpdateError("update", None, e, server_id=server_id) from e
                raise

        should_wait = plan.attributes["wait_for_active"] if wait is None else wait
        if should_wait:
            await self._wait(
                server_id, ConvergenceTarget.ACTIVE, self._timeout("update", plan, timeout_seconds)
            )

        remote = await self._call("read", self._api.read, server_id, server_id=server_id)
        state = merge_state(remote, desired.network_attachments, carried, keypair=observed.keypair)
        logger.info(
            "Server updated",
            extra={
                "server_id": server_id,
                "steps": applied,
                "changed_fields": sorted(plan.changed_fields),
            },
        )
        return state

    async def _apply_delete(
        self,
        plan: Plan,
        observed: ServerState,
        wait: bool | None,
        timeout_seconds: float | None,
    ) -> None:
        server_id = observed.id
        try:
            await self._call("delete", self._api.delete, server_id, server_id=server_id)
        except ResourceNotFoundError:
            logger.info("Server already absent", extra={"server_id": server_id})
            return

        should_wait = plan.attributes["wait_for_deleted"] if wait is None else wait
        if should_wait:
            await self._wait(
                server_id, ConvergenceTarget.ABSENT, self._timeout("delete", plan, timeout_seconds)
            )
        logger.info("Server deleted", extra={"server_id": server_id})

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _timeout(self, step: str, plan: Plan, override: float | None) -> float:
        if override is not None:
            return override
        planned = plan.timeout_seconds(step)
        if planned is not None:
            return planned
        return getattr(self._config.timeouts, f"{step}_seconds")

    async def _call(self, name: str, func: Callable[..., Any], *args: Any, **context: Any) -> Any:
        """Run one blocking remote call in the executor."""
        logger.info("Remote call", extra={"call": name, **context})
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _step(
        self,
        server_id: str,
        step: str,
        attachment_key: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Run one attachment step, wrapping failures in PartialUpdateError."""
        try:
            return await self._call(step, func, *args, attachment_key=attachment_key)
        except AzureError as e:
            raise PartialUpdateError(step, attachment_key, e, server_id=server_id) from e

    async def _wait(self, server_id: str, target: ConvergenceTarget, timeout_seconds: float) -> None:
        async def read_status() -> str:
            state = await self._call("read", self._api.read, server_id, server_id=server_id)
            return state.status or ""

        waiter = ConvergenceWaiter(
            read_status,
            target,
            timeout_seconds,
            resource_id=server_id,
            poll_interval_seconds=self._config.poll_interval_seconds,
            error_backoff_seconds=self._config.poll_error_backoff_seconds,
            clock=self._clock,
            sleep=self._sleep,
        )
        await waiter.wait()
