"""VPS operator CLI (vpso).

Usage:
    vpso plan web-1                # Show the plan for one server
    vpso apply web-1 [--no-wait]   # Create or update one server
    vpso destroy web-1             # Delete one server
    vpso refresh web-1             # Re-read one server into stored state
    vpso import web-1 SERVER_ID    # Adopt an existing server
    vpso show web-1                # Print stored state
    vpso run                       # Reconcile every configured server
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any

import click
import yaml
from azure.core.exceptions import AzureError

from .client import ComputeAPI, VpsClient
from .config import Config, ConfigurationError
from .main import reconcile_all, setup_logging
from .orchestrator import ReconcileRequest, ReconcileResult, ServerOrchestrator
from .planner import Operation, Planner
from .policies import PolicyConflictError
from .spec_loader import SpecLoadError, load_spec
from .state import StateStore, StateStoreError

ClientFactory = Callable[[Config], ComputeAPI]


def default_client_factory(config: Config) -> ComputeAPI:
    """Build the HTTP client from VPS_API_TOKEN."""
    token = os.environ.get("VPS_API_TOKEN", "")
    if not token:
        raise click.ClickException("VPS_API_TOKEN is required")
    return VpsClient(config.api_endpoint, config.project_id, token)


class Context:
    """Objects shared by all commands."""

    def __init__(self, config: Config, client_factory: ClientFactory) -> None:
        self.config = config
        self.store = StateStore(config.state_dir)
        self._client_factory = client_factory
        self._api: ComputeAPI | None = None

    @property
    def api(self) -> ComputeAPI:
        if self._api is None:
            self._api = self._client_factory(self.config)
        return self._api

    def orchestrator(self) -> ServerOrchestrator:
        return ServerOrchestrator(self.api, self.config)


pass_context = click.make_pass_decorator(Context)


def echo_yaml(data: Any) -> None:
    click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())


def load_or_fail(ctx: Context, name: str) -> Any:
    try:
        return load_spec(ctx.config.specs_dir, name)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def stored_or_fail(ctx: Context, name: str) -> Any:
    try:
        state = ctx.store.load(name)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e
    if state is None:
        raise click.ClickException(f"No stored state for '{name}'")
    return state


def report(result: ReconcileResult) -> None:
    if result.error is not None:
        raise click.ClickException(f"{type(result.error).__name__}: {result.error}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="vpso")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(click_ctx: click.Context, debug: bool) -> None:
    """VPS operator CLI (vpso).

    Reconciles servers declared in SPECS_DIR against the compute API and
    keeps their observed state in STATE_DIR.
    """
    if click_ctx.obj is not None:
        return
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if debug:
        setup_logging(logging.DEBUG)
    click_ctx.obj = Context(config, default_client_factory)


@cli.command()
@click.argument("name")
@pass_context
def plan(ctx: Context, name: str) -> None:
    """Show the plan for a server without applying it."""
    desired = load_or_fail(ctx, name)
    try:
        observed = ctx.store.load(name)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    operation = Operation.CREATE if observed is None else Operation.UPDATE
    try:
        computed = Planner().plan(operation, desired, observed)
    except PolicyConflictError as e:
        raise click.ClickException(str(e)) from e

    echo_yaml(computed.to_dict())


@cli.command()
@click.argument("name")
@click.option("--no-wait", is_flag=True, help="Return without waiting for the server to be active.")
@click.option("--timeout", type=float, default=None, help="Wait deadline in seconds.")
@pass_context
def apply(ctx: Context, name: str, no_wait: bool, timeout: float | None) -> None:
    """Create or update a server."""
    desired = load_or_fail(ctx, name)
    try:
        observed = ctx.store.load(name)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    request = ReconcileRequest(
        operation=Operation.CREATE if observed is None else Operation.UPDATE,
        desired=desired,
        observed=observed,
        wait=False if no_wait else None,
        timeout_seconds=timeout,
    )
    result = asyncio.run(ctx.orchestrator().reconcile(request))

    # A failed cycle may still return the re-read server
    if result.applied and result.state is not None:
        ctx.store.save(name, result.state)
    report(result)

    if result.applied and result.state is not None:
        click.echo(f"{request.operation.value}d {name} ({result.state.id}, {result.state.status})")
    else:
        click.echo(f"Dry run: {name} not changed")


@cli.command()
@click.argument("name")
@click.option("--no-wait", is_flag=True, help="Return without waiting for the server to be gone.")
@click.option("--timeout", type=float, default=None, help="Wait deadline in seconds.")
@pass_context
def destroy(ctx: Context, name: str, no_wait: bool, timeout: float | None) -> None:
    """Delete a server and its stored state."""
    observed = stored_or_fail(ctx, name)
    request = ReconcileRequest(
        operation=Operation.DELETE,
        observed=observed,
        wait=False if no_wait else None,
        timeout_seconds=timeout,
    )
    result = asyncio.run(ctx.orchestrator().reconcile(request))
    report(result)

    if result.applied:
        ctx.store.delete(name)
        click.echo(f"deleted {name} ({observed.id})")
    else:
        click.echo(f"Dry run: {name} not changed")


@cli.command()
@click.argument("name")
@pass_context
def refresh(ctx: Context, name: str) -> None:
    """Re-read a server into its stored state."""
    observed = stored_or_fail(ctx, name)
    try:
        state = asyncio.run(ctx.orchestrator().refresh(observed))
    except AzureError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    ctx.store.save(name, state)
    echo_yaml(state.to_dict())


@cli.command(name="import")
@click.argument("name")
@click.argument("server_id")
@pass_context
def import_(ctx: Context, name: str, server_id: str) -> None:
    """Adopt an existing server under a name."""
    try:
        existing = ctx.store.load(name)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e
    if existing is not None:
        raise click.ClickException(f"'{name}' already has stored state ({existing.id})")

    try:
        state = asyncio.run(ctx.orchestrator().import_server(server_id))
    except AzureError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    ctx.store.save(name, state)
    click.echo(f"imported {name} ({state.id})")


@cli.command()
@click.argument("name")
@pass_context
def show(ctx: Context, name: str) -> None:
    """Print the stored state of a server."""
    echo_yaml(stored_or_fail(ctx, name).to_dict())


@cli.command()
@pass_context
def run(ctx: Context) -> None:
    """Reconcile every configured server once."""
    try:
        results = asyncio.run(reconcile_all(ctx.config, ctx.api))
    except (SpecLoadError, StateStoreError) as e:
        raise click.ClickException(str(e)) from e

    for result in results:
        status = "ok" if result.success else f"failed: {result.error}"
        click.echo(f"{result.server}: {result.operation.value} {status}")

    if not all(r.success for r in results):
        raise click.ClickException("Some servers failed to reconcile")


def main() -> None:
    """Entry point for the vpso CLI."""
    cli()


if __name__ == "__main__":
    main()
