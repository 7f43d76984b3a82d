"""Command line interface for feed_sync.

Manual trigger surface for the sync pipeline, sharing the same single-flight
guard as the scheduled task.
"""

import asyncio
import json
import sys
from typing import Optional, Tuple

import click

from feed_sync.config import get_config
from feed_sync.logging_config import setup_logging
from feed_sync.models.schemas import CredentialStatus, SyncOptions
from feed_sync.runtime import close_runtime, get_runtime
from feed_sync.services.orchestrator import SyncInProgressError
from feed_sync.storage import database


async def _with_runtime(coro_factory):
    try:
        return await coro_factory(get_runtime())
    finally:
        await close_runtime()
        await database.close_database()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.option("--log-level", default=None, help="Override FEED_SYNC_LOG_LEVEL")
def cli(log_level: Optional[str]) -> None:
    """feed-sync: pull feeds into local notes."""
    config = get_config()
    if log_level:
        config.log_level = log_level.upper()
    setup_logging(config)


@cli.command()
@click.option("--feed", "feed_ids", type=int, multiple=True, help="Feed id to sync (repeatable)")
@click.option("--stale-hours", type=float, default=None, help="Only sync feeds older than this many hours")
@click.option("--no-materialize", is_flag=True, help="Download items without creating notes")
def sync(feed_ids: Tuple[int, ...], stale_hours: Optional[float], no_materialize: bool) -> None:
    """Run a sync now and print the result."""
    options = SyncOptions(
        feed_ids=list(feed_ids) or None,
        stale_threshold_hours=stale_hours,
        materialize=not no_materialize,
    )

    try:
        result = asyncio.run(_with_runtime(lambda rt: rt.orchestrator.run(options)))
    except SyncInProgressError as e:
        click.echo(f"Sync failed: {e}", err=True)
        sys.exit(1)

    _echo_json(result.to_dict())
    click.echo(
        f"Sync complete! {result.feeds_refreshed} feeds, {result.items_fetched} items, "
        f"{result.items_materialized} notes created",
        err=True,
    )


@cli.command()
def status() -> None:
    """Show sync statistics and credential health."""

    async def collect(rt):
        return {
            "sync": await rt.orchestrator.get_stats(),
            "credentials": await rt.pool.get_stats(),
        }

    _echo_json(asyncio.run(_with_runtime(collect)))


@cli.command()
def credentials() -> None:
    """List credentials and their status."""

    async def collect(rt):
        return await database.list_credentials()

    for credential in asyncio.run(_with_runtime(collect)):
        until = f" until {credential.blacklisted_until.isoformat()}" if credential.blacklisted_until else ""
        click.echo(f"{credential.id}\t{credential.name}\t{credential.status.value}{until}")


@cli.command("set-status")
@click.argument("credential_id", type=int)
@click.argument("status", type=click.Choice([s.value for s in CredentialStatus]))
def set_status(credential_id: int, status: str) -> None:
    """Set a credential's status (e.g. disable it or re-activate it)."""
    updated = asyncio.run(_with_runtime(
        lambda rt: rt.pool.set_status(credential_id, CredentialStatus(status))
    ))
    if not updated:
        click.echo(f"Credential {credential_id} not found", err=True)
        sys.exit(1)
    click.echo(f"Credential {credential_id} is now {status}")


@cli.command()
def health() -> None:
    """Check whether the content platform is reachable."""
    healthy = asyncio.run(_with_runtime(lambda rt: rt.client.check_health()))
    if not healthy:
        click.echo("Platform unreachable", err=True)
        sys.exit(1)
    click.echo("Platform reachable")


if __name__ == "__main__":
    cli()
