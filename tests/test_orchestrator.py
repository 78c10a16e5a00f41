"""Tests for lifecycle orchestration against the in-memory compute API."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError

from vps_mock import FakeClock, MockComputeAPI
from vps_operator.config import Config
from vps_operator.models import NetworkAttachment, ServerSpec, ServerState
from vps_operator.orchestrator import (
    PartialUpdateError,
    ReconcileRequest,
    ServerOrchestrator,
    merge_state,
)
from vps_operator.planner import Operation
from vps_operator.policies import PolicyConflictError
from vps_operator.waiter import ConvergenceTimeoutError


def make_spec(attachments: list[dict[str, Any]] | None = None, **overrides: Any) -> ServerSpec:
    data: dict[str, Any] = {
        "name": "web-1",
        "flavor_id": "flavor-small",
        "image_id": "image-ubuntu",
        "network_attachments": attachments or [{"network_id": "net-a"}],
    }
    data.update(overrides)
    return ServerSpec.model_validate(data)


def nics(*network_ids: str, **floating: str) -> list[NetworkAttachment]:
    """Attachments for seeding; keyword arguments bind floating IPs by network."""
    return [
        NetworkAttachment(network_id=n, floating_ip_id=floating.get(n.replace("-", "_")))
        for n in network_ids
    ]


def make_config(tmp_path: Path, **overrides: Any) -> Config:
    return Config(
        api_endpoint="https://vps.example.com",
        project_id="proj-1",
        specs_dir=tmp_path / "specs",
        state_dir=tmp_path / "state",
        poll_interval_seconds=1.0,
        poll_error_backoff_seconds=1.0,
        **overrides,
    )


@pytest.fixture
def api() -> MockComputeAPI:
    api = MockComputeAPI()
    api.add_floating_ip("fip-1", "203.0.113.10")
    api.add_floating_ip("fip-2", "203.0.113.20")
    return api


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(api: MockComputeAPI, clock: FakeClock, tmp_path: Path) -> ServerOrchestrator:
    return ServerOrchestrator(api, make_config(tmp_path), clock=clock, sleep=clock.sleep)


class TestCreate:
    """Tests for server creation."""

    @pytest.mark.asyncio
    async def test_create_and_wait(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that creation waits for active and re-reads the server."""
        state = await orchestrator.create(make_spec())

        assert api.call_names() == ["create"]
        assert state.id == "srv-1"
        assert state.status == "active"
        assert len(state.ip_addresses) == 1

    @pytest.mark.asyncio
    async def test_create_without_wait(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that an asynchronous create returns the pending server."""
        state = await orchestrator.create(make_spec(), wait=False)

        assert api.calls == [("create", "web-1")]
        assert state.status == "building"

    @pytest.mark.asyncio
    async def test_secrets_encoded_and_carried(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that secrets are sent base64-encoded and stored as given."""
        spec = make_spec(password="s3cret", user_data="#!/bin/sh\necho hi\n", keypair="deploy")

        state = await orchestrator.create(spec)

        request = api.create_requests[0]
        assert request["password"] == base64.b64encode(b"s3cret").decode()
        assert base64.b64decode(request["user_data"]) == b"#!/bin/sh\necho hi\n"
        assert request["keypair"] == "deploy"
        assert state.password == "s3cret"
        assert state.user_data == "#!/bin/sh\necho hi\n"
        assert state.keypair == "deploy"

    @pytest.mark.asyncio
    async def test_runtime_settings_carried(self, orchestrator: ServerOrchestrator) -> None:
        """Test that runtime-only settings end up in the state."""
        spec = make_spec(wait_for_deleted=False, timeouts={"delete": "2m"})

        state = await orchestrator.create(spec)

        assert state.wait_for_deleted is False
        assert state.timeouts.delete == "2m"

    @pytest.mark.asyncio
    async def test_floating_ip_forces_wait(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that floating IPs are bound once active, even without waiting."""
        spec = make_spec([{"network_id": "net-a", "floating_ip_id": "fip-1"}])

        state = await orchestrator.create(spec, wait=False)

        assert api.mutations() == [("create", "web-1"), ("associate", "fip-1", "srv-1", "net-a")]
        assert state.status == "active"
        assert state.network_attachments[0].floating_ip == "203.0.113.10"
        assert "203.0.113.10" in state.ip_addresses

    @pytest.mark.asyncio
    async def test_create_timeout(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that a server stuck building times out."""
        api.script_status("srv-1", "building")

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            await orchestrator.create(make_spec(), timeout_seconds=3.0)

        assert exc_info.value.last_status == "building"
        assert exc_info.value.timeout_seconds == 3.0

    @pytest.mark.asyncio
    async def test_create_timeout_from_configuration(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI, clock: FakeClock
    ) -> None:
        """Test that the configured create timeout bounds the wait."""
        api.script_status("srv-1", "building")

        with pytest.raises(ConvergenceTimeoutError):
            await orchestrator.create(make_spec(timeouts={"create": "30s"}))

        assert clock.now == 30.0

    @pytest.mark.asyncio
    async def test_attachment_order_follows_desired(self, orchestrator: ServerOrchestrator) -> None:
        """Test that the state lists attachments in authored order."""
        spec = make_spec([{"network_id": "net-b"}, {"network_id": "net-a"}])

        state = await orchestrator.create(spec)

        assert [a.network_id for a in state.network_attachments] == ["net-b", "net-a"]


class TestUpdate:
    """Tests for server updates."""

    @pytest.mark.asyncio
    async def test_noop(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that an unchanged server issues no remote call."""
        observed = api.seed_server(attachments=nics("net-a"))

        state = await orchestrator.update(make_spec(), observed)

        assert api.calls == []
        assert state.id == observed.id
        assert state.ip_addresses == observed.ip_addresses

    @pytest.mark.asyncio
    async def test_policy_conflict_before_remote_calls(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that an immutable change aborts before any call."""
        observed = api.seed_server(attachments=nics("net-a"))
        spec = make_spec([{"network_id": "net-a"}, {"network_id": "net-b"}], flavor_id="flavor-large")

        with pytest.raises(PolicyConflictError, match="flavor_id"):
            await orchestrator.update(spec, observed)

        assert api.calls == []

    @pytest.mark.asyncio
    async def test_deletions_before_creations(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that every detach is issued before any attach."""
        observed = api.seed_server(attachments=nics("net-a", "net-b", "net-c"))
        spec = make_spec(
            [{"network_id": "net-d"}, {"network_id": "net-a"}, {"network_id": "net-e"}]
        )

        await orchestrator.update(spec, observed)

        names = api.call_names()
        detaches = [i for i, name in enumerate(names) if name == "detach"]
        attaches = [i for i, name in enumerate(names) if name == "attach"]
        assert len(detaches) == 2
        assert len(attaches) == 2
        assert max(detaches) < min(attaches)

    @pytest.mark.asyncio
    async def test_deleted_attachment_releases_floating_ip(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a bound floating IP is released before its NIC is detached."""
        observed = api.seed_server(attachments=nics("net-a", "net-b", net_b="fip-1"))

        await orchestrator.update(make_spec(), observed)

        assert api.mutations() == [("disassociate", "fip-1"), ("detach", "srv-1", "net-b")]
        assert "fip-1" not in api.bindings

    @pytest.mark.asyncio
    async def test_floating_ip_swap(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that the old address is disassociated before the new one is associated."""
        observed = api.seed_server(attachments=nics("net-a", net_a="fip-1"))
        spec = make_spec([{"network_id": "net-a", "floating_ip_id": "fip-2"}])

        state = await orchestrator.update(spec, observed)

        assert api.mutations() == [
            ("disassociate", "fip-1"),
            ("associate", "fip-2", "srv-1", "net-a"),
        ]
        assert state.network_attachments[0].floating_ip_id == "fip-2"
        assert state.network_attachments[0].floating_ip == "203.0.113.20"

    @pytest.mark.asyncio
    async def test_floating_ip_moves_between_attachments(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that an address moving to another NIC is never bound twice."""
        observed = api.seed_server(attachments=nics("net-a", "net-b", net_a="fip-1"))
        spec = make_spec(
            [{"network_id": "net-b", "floating_ip_id": "fip-1"}, {"network_id": "net-a"}]
        )

        await orchestrator.update(spec, observed)

        assert api.mutations() == [
            ("disassociate", "fip-1"),
            ("associate", "fip-1", "srv-1", "net-b"),
        ]
        assert api.bindings["fip-1"] == ("srv-1", "net-b")

    @pytest.mark.asyncio
    async def test_new_attachment_with_floating_ip(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a new NIC is attached before its address is bound."""
        observed = api.seed_server(attachments=nics("net-a"))
        spec = make_spec([{"network_id": "net-a"}, {"network_id": "net-b", "floating_ip_id": "fip-2"}])

        await orchestrator.update(spec, observed)

        assert api.mutations() == [
            ("attach", "srv-1", "net-b"),
            ("associate", "fip-2", "srv-1", "net-b"),
        ]

    @pytest.mark.asyncio
    async def test_interface_update(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that changed security groups are updated in place."""
        observed = api.seed_server(attachments=nics("net-a"))
        spec = make_spec([{"network_id": "net-a", "security_group_ids": ["sg-2", "sg-1"]}])

        state = await orchestrator.update(spec, observed)

        assert api.mutations() == [
            ("update_attachment", "srv-1", "net-a", ("security_group_ids",)),
        ]
        assert state.network_attachments[0].security_group_ids == ["sg-2", "sg-1"]

    @pytest.mark.asyncio
    async def test_field_update_after_attachments(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that top-level fields are applied in one call after attachment steps."""
        observed = api.seed_server(attachments=nics("net-a"))
        spec = make_spec(
            [{"network_id": "net-a"}, {"network_id": "net-b"}],
            name="web-2",
            description="frontend",
        )

        state = await orchestrator.update(spec, observed)

        assert api.call_names() == ["attach", "update"]
        assert api.mutations()[-1] == (
            "update",
            "srv-1",
            (("description", "frontend"), ("name", "web-2")),
        )
        assert state.name == "web-2"
        assert state.description == "frontend"

    @pytest.mark.asyncio
    async def test_state_reflects_new_topology(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that the re-read state carries recomputed addresses in desired order."""
        observed = api.seed_server(attachments=nics("net-a"))
        spec = make_spec([{"network_id": "net-c"}, {"network_id": "net-a"}])

        state = await orchestrator.update(spec, observed)

        assert [a.network_id for a in state.network_attachments] == ["net-c", "net-a"]
        assert len(state.ip_addresses) == 2

    @pytest.mark.asyncio
    async def test_update_waits_for_active(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a synchronous update waits for the server to settle."""
        observed = api.seed_server(attachments=nics("net-a"))
        api.script_status(observed.id, "resizing", "active")

        state = await orchestrator.update(make_spec(name="web-2"), observed)

        reads = [call for call in api.calls if call[0] == "read"]
        assert len(reads) == 3
        assert state.status == "active"

    @pytest.mark.asyncio
    async def test_detach_failure_aborts(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a failed detach stops every later step."""
        observed = api.seed_server(attachments=nics("net-a", "net-b", "net-c"))
        error = HttpResponseError(message="internal error")
        api.fail("detach", error)

        with pytest.raises(PartialUpdateError) as exc_info:
            await orchestrator.update(make_spec([{"network_id": "net-a"}, {"network_id": "net-d"}]), observed)

        assert exc_info.value.step == "detach"
        assert exc_info.value.attachment_key == "net-b"
        assert exc_info.value.__cause__ is error
        assert api.call_names() == ["detach"]

    @pytest.mark.asyncio
    async def test_detach_failure_leaves_floating_ip_released(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that an address released before a failed detach is not re-bound."""
        observed = api.seed_server(attachments=nics("net-a", "net-b", net_b="fip-1"))
        api.fail("detach", HttpResponseError(message="internal error"))

        with pytest.raises(PartialUpdateError):
            await orchestrator.update(make_spec(), observed)

        assert api.call_names() == ["disassociate", "detach"]
        assert "fip-1" not in api.bindings

    @pytest.mark.asyncio
    async def test_field_update_failure_after_steps(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a failed field update after attachment steps is a partial update."""
        observed = api.seed_server(attachments=nics("net-a"))
        api.fail("update", HttpResponseError(message="conflict"))
        spec = make_spec([{"network_id": "net-a"}, {"network_id": "net-b"}], name="web-2")

        with pytest.raises(PartialUpdateError) as exc_info:
            await orchestrator.update(spec, observed)

        assert exc_info.value.step == "update"
        assert exc_info.value.attachment_key is None

    @pytest.mark.asyncio
    async def test_field_update_failure_alone(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a failed field update with nothing applied surfaces as-is."""
        observed = api.seed_server(attachments=nics("net-a"))
        api.fail("update", HttpResponseError(message="conflict"))

        with pytest.raises(HttpResponseError):
            await orchestrator.update(make_spec(name="web-2"), observed)


class TestDelete:
    """Tests for server deletion."""

    @pytest.mark.asyncio
    async def test_delete_and_wait(self, clock: FakeClock, tmp_path: Path) -> None:
        """Test that deletion waits until the server is gone."""
        api = MockComputeAPI(delete_lag_reads=2)
        orchestrator = ServerOrchestrator(api, make_config(tmp_path), clock=clock, sleep=clock.sleep)
        observed = api.seed_server()

        await orchestrator.delete(observed)

        assert api.call_names() == ["delete"]
        assert [c[0] for c in api.calls].count("read") == 3
        assert observed.id not in api.servers

    @pytest.mark.asyncio
    async def test_not_found_after_delete_is_success(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a not-found check after delete completes the operation."""
        observed = api.seed_server()

        await orchestrator.delete(observed)

        assert api.calls == [("delete", observed.id), ("read", observed.id)]

    @pytest.mark.asyncio
    async def test_already_absent(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that deleting a missing server succeeds."""
        observed = ServerState(id="srv-9", name="gone", flavor_id="f", image_id="i")

        await orchestrator.delete(observed)

        assert api.calls == [("delete", "srv-9")]

    @pytest.mark.asyncio
    async def test_delete_without_wait(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that an asynchronous delete issues a single call."""
        observed = api.seed_server()

        await orchestrator.delete(observed, wait=False)

        assert api.calls == [("delete", observed.id)]

    @pytest.mark.asyncio
    async def test_wait_flag_from_state(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that the stored wait_for_deleted flag is honored."""
        observed = api.seed_server().model_copy(update={"wait_for_deleted": False})

        await orchestrator.delete(observed)

        assert api.calls == [("delete", observed.id)]


class TestRefreshAndImport:
    """Tests for refresh and import."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_order_and_carried_fields(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that refresh keeps the previous order and settings."""
        seeded = api.seed_server(attachments=nics("net-a", "net-b"), keypair="deploy")
        observed = seeded.model_copy(
            update={
                "network_attachments": list(reversed(seeded.network_attachments)),
                "password": "s3cret",
                "wait_for_active": False,
            }
        )

        state = await orchestrator.refresh(observed)

        assert [a.network_id for a in state.network_attachments] == ["net-b", "net-a"]
        assert state.password == "s3cret"
        assert state.wait_for_active is False
        assert state.keypair == "deploy"

    @pytest.mark.asyncio
    async def test_refresh_missing_server(self, orchestrator: ServerOrchestrator) -> None:
        """Test that refreshing a vanished server is an error."""
        observed = ServerState(id="srv-9", name="gone", flavor_id="f", image_id="i")

        with pytest.raises(ResourceNotFoundError):
            await orchestrator.refresh(observed)

    @pytest.mark.asyncio
    async def test_import(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that an imported server has sorted attachments and default settings."""
        seeded = api.seed_server(attachments=nics("net-b", "net-a"))

        state = await orchestrator.import_server(seeded.id)

        assert [a.network_id for a in state.network_attachments] == ["net-a", "net-b"]
        assert state.password is None
        assert state.wait_for_active is True
        assert state.timeouts.create is None


class TestReconcile:
    """Tests for the reconcile entry point."""

    @pytest.mark.asyncio
    async def test_create_result(self, orchestrator: ServerOrchestrator) -> None:
        """Test a successful create result."""
        result = await orchestrator.reconcile(
            ReconcileRequest(operation=Operation.CREATE, desired=make_spec())
        )

        assert result.success
        assert result.applied
        assert result.server == "web-1"
        assert result.plan is not None
        assert result.state is not None and result.state.id == "srv-1"
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_conflict_captured(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that a policy conflict is returned, not raised."""
        observed = api.seed_server()
        result = await orchestrator.reconcile(
            ReconcileRequest(
                operation=Operation.UPDATE,
                desired=make_spec(image_id="image-debian"),
                observed=observed,
            )
        )

        assert not result.success
        assert isinstance(result.error, PolicyConflictError)
        assert result.plan is None
        assert not result.applied
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_timeout_captured(self, orchestrator: ServerOrchestrator, api: MockComputeAPI) -> None:
        """Test that a convergence timeout is returned in the result."""
        api.script_status("srv-1", "building")

        result = await orchestrator.reconcile(
            ReconcileRequest(operation=Operation.CREATE, desired=make_spec(), timeout_seconds=2.0)
        )

        assert isinstance(result.error, ConvergenceTimeoutError)

    @pytest.mark.asyncio
    async def test_timeout_keeps_new_server(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a create timeout still returns the created server."""
        api.script_status("srv-1", "building")

        result = await orchestrator.reconcile(
            ReconcileRequest(
                operation=Operation.CREATE, desired=make_spec(password="s3cret"), timeout_seconds=2.0
            )
        )

        assert isinstance(result.error, ConvergenceTimeoutError)
        assert result.applied
        assert result.state is not None
        assert result.state.id == "srv-1"
        assert result.state.status == "building"
        assert result.state.password == "s3cret"

    @pytest.mark.asyncio
    async def test_timeout_keeps_new_server_when_reads_fail(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that the server identity survives even without a final read."""
        api.fail("read", ServiceRequestError("connection reset"), times=4)

        result = await orchestrator.reconcile(
            ReconcileRequest(operation=Operation.CREATE, desired=make_spec(), timeout_seconds=2.0)
        )

        assert isinstance(result.error, ConvergenceTimeoutError)
        assert result.state is not None
        assert result.state.id == "srv-1"
        assert [a.network_id for a in result.state.network_attachments] == ["net-a"]

    @pytest.mark.asyncio
    async def test_partial_update_returns_reread_state(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that a failed attachment step returns what was actually applied."""
        observed = api.seed_server(attachments=nics("net-a", "net-b"))
        api.fail("attach", HttpResponseError(message="quota exceeded"))

        result = await orchestrator.reconcile(
            ReconcileRequest(
                operation=Operation.UPDATE,
                desired=make_spec([{"network_id": "net-b"}, {"network_id": "net-c"}]),
                observed=observed,
            )
        )

        assert isinstance(result.error, PartialUpdateError)
        assert result.error.step == "attach"
        assert result.error.server_id == "srv-1"
        assert result.applied
        assert result.state is not None
        assert [a.network_id for a in result.state.network_attachments] == ["net-b"]

    @pytest.mark.asyncio
    async def test_delete_timeout_keeps_stored_state(
        self, clock: FakeClock, tmp_path: Path
    ) -> None:
        """Test that a server still deleting is not written back as observed."""
        api = MockComputeAPI(delete_lag_reads=10)
        orchestrator = ServerOrchestrator(
            api, make_config(tmp_path), clock=clock, sleep=clock.sleep
        )
        observed = api.seed_server()

        result = await orchestrator.reconcile(
            ReconcileRequest(operation=Operation.DELETE, observed=observed, timeout_seconds=2.0)
        )

        assert isinstance(result.error, ConvergenceTimeoutError)
        assert result.state is None
        assert not result.applied

    @pytest.mark.asyncio
    async def test_dry_run(self, api: MockComputeAPI, clock: FakeClock, tmp_path: Path) -> None:
        """Test that a dry run plans without remote calls."""
        orchestrator = ServerOrchestrator(
            api, make_config(tmp_path, dry_run=True), clock=clock, sleep=clock.sleep
        )

        result = await orchestrator.reconcile(
            ReconcileRequest(operation=Operation.CREATE, desired=make_spec())
        )

        assert result.success
        assert not result.applied
        assert result.plan is not None
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_independent_requests_run_concurrently(
        self, orchestrator: ServerOrchestrator, api: MockComputeAPI
    ) -> None:
        """Test that separate servers reconcile side by side."""
        results = await asyncio.gather(
            orchestrator.reconcile(
                ReconcileRequest(operation=Operation.CREATE, desired=make_spec(name="web-1"))
            ),
            orchestrator.reconcile(
                ReconcileRequest(operation=Operation.CREATE, desired=make_spec(name="web-2"))
            ),
        )

        assert all(r.success for r in results)
        assert {r.state.id for r in results} == {"srv-1", "srv-2"}


class TestMergeState:
    """Tests for merge_state."""

    def test_keypair_carried_when_missing(self) -> None:
        """Test that a keypair the API does not return is kept."""
        remote = ServerState(id="srv-1", name="web-1", flavor_id="f", image_id="i")

        merged = merge_state(remote, [], {"password": "pw"}, keypair="deploy")

        assert merged.keypair == "deploy"
        assert merged.password == "pw"
        assert remote.password is None
