"""CLI entrypoint for localfirst-sync.

Runs reconcile passes, local edits and the push-event watcher against the
remote service configured through ``SYNC_*`` environment variables.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from localfirst_sync.api_client import ApiClient
from localfirst_sync.config import settings
from localfirst_sync.hub import SyncHub
from localfirst_sync.sync.state import LocalStore, TombstoneTracker, is_provisional_id

T = TypeVar("T")


def _run_with_hub(action: Callable[[SyncHub], Awaitable[T]]) -> T:
    """Build the API client and hub, run *action*, then close both."""

    async def runner() -> T:
        async with ApiClient() as api:
            hub = SyncHub(api, settings.state_dir, scope=settings.scope)
            try:
                return await action(hub)
            finally:
                await hub.aclose()

    try:
        return asyncio.run(runner())
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _parse_data(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object")
    return data


def _check_type(entity_type: str) -> None:
    names = [config.name for config in settings.entity_types]
    if entity_type not in names:
        raise click.BadParameter(
            f"unknown entity type {entity_type!r} (choose from {', '.join(names)})"
        )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
def cli(verbose: bool) -> None:
    """localfirst-sync CLI: reconcile a local entity cache with the API."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--type", "entity_types", multiple=True, help="Entity type(s); default all.")
@click.option("--scope", default=None, help="Scope passed to the remote listing.")
def reconcile(entity_types: tuple[str, ...], scope: str | None) -> None:
    """Run one reconcile pass per entity type."""
    for entity_type in entity_types:
        _check_type(entity_type)

    reports = _run_with_hub(
        lambda hub: hub.reconcile_all(list(entity_types) or None, scope)
    )

    failures = 0
    for report in reports:
        if report.success:
            click.echo(f"OK: {report.summary()}")
        else:
            click.echo(f"FAIL: {report.summary()}", err=True)
            failures += 1
    if failures:
        sys.exit(failures)


@cli.command()
@click.option("--type", "entity_types", multiple=True, help="Entity type(s); default all.")
def status(entity_types: tuple[str, ...]) -> None:
    """Show cached, provisional and tombstoned counts from local state."""
    state_dir = Path(settings.state_dir)
    names = list(entity_types) or [config.name for config in settings.entity_types]
    for name in names:
        _check_type(name)
        entities = LocalStore(state_dir, name).load()
        provisional = sum(1 for e in entities if is_provisional_id(e.id))
        tombstoned = len(TombstoneTracker(state_dir, name).ids())
        click.echo(
            f"{name}: {len(entities)} cached, {provisional} provisional, "
            f"{tombstoned} tombstoned"
        )


@cli.command("list")
@click.option("--type", "entity_type", required=True, help="Entity type.")
def list_entities(entity_type: str) -> None:
    """Print the cached entities of one type as JSON."""
    _check_type(entity_type)
    entities = LocalStore(Path(settings.state_dir), entity_type).load()
    click.echo(json.dumps([e.to_json_dict() for e in entities], indent=2))


@cli.command()
@click.option("--type", "entity_type", required=True, help="Entity type.")
@click.option("--data", required=True, help="Entity fields as a JSON object.")
def create(entity_type: str, data: str) -> None:
    """Create an entity locally and upload it."""
    _check_type(entity_type)
    payload = _parse_data(data)
    result = _run_with_hub(lambda hub: hub.engine(entity_type).create_local(payload))
    _echo_result(result.success, result.message, result.entity_id)


@cli.command()
@click.option("--type", "entity_type", required=True, help="Entity type.")
@click.option("--id", "entity_id", required=True, help="Entity id.")
@click.option("--data", required=True, help="Changed fields as a JSON object.")
def update(entity_type: str, entity_id: str, data: str) -> None:
    """Change an entity locally and push it."""
    _check_type(entity_type)
    changes = _parse_data(data)
    result = _run_with_hub(
        lambda hub: hub.engine(entity_type).update_local(entity_id, changes)
    )
    _echo_result(result.success, result.message, result.entity_id)


@cli.command()
@click.option("--type", "entity_type", required=True, help="Entity type.")
@click.option("--id", "entity_id", required=True, help="Entity id.")
def delete(entity_type: str, entity_id: str) -> None:
    """Delete an entity locally (tombstoned) and remotely."""
    _check_type(entity_type)
    result = _run_with_hub(lambda hub: hub.engine(entity_type).delete_local(entity_id))
    _echo_result(result.success, result.message, result.entity_id)


@cli.command("reset-tombstones")
@click.option("--type", "entity_type", required=True, help="Entity type.")
@click.option("--id", "entity_ids", multiple=True, help="Only clear these ids.")
def reset_tombstones(entity_type: str, entity_ids: tuple[str, ...]) -> None:
    """Forget deletions so the remote copies can be adopted again."""
    _check_type(entity_type)
    tracker = TombstoneTracker(Path(settings.state_dir), entity_type)
    removed = tracker.reset(list(entity_ids) or None)
    click.echo(f"Cleared {removed} tombstone(s) for {entity_type}.")


@cli.command()
@click.option("--scope", default=None, help="Resource to watch (e.g. a poll id).")
@click.option(
    "--path",
    default=None,
    help="Event stream path (e.g. /api/sse/organizations/{scope}). Defaults to SYNC_EVENTS_PATH.",
)
def watch(scope: str | None, path: str | None) -> None:
    """Reconcile affected entity types whenever the server pushes a change."""

    async def run(hub: SyncHub) -> None:
        await hub.reconcile_all(scope=scope)
        channel = await hub.watch(settings.api_token, scope, path=path)
        if not channel.is_live:
            click.echo("Event channel not opened (offline or no credential).", err=True)
            return
        click.echo(f"Watching {scope or settings.scope or 'all'} (Ctrl-C to stop)...")
        await channel.wait_closed()
        click.echo("Event channel gave up after repeated failures.", err=True)

    try:
        _run_with_hub(run)
    except KeyboardInterrupt:
        click.echo("Stopped.")


def _echo_result(success: bool, message: str, entity_id: str) -> None:
    if success:
        click.echo(f"OK: {message}")
    else:
        click.echo(f"FAIL: {entity_id}: {message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
