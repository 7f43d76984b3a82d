"""Sync MCP tools.

This module provides MCP tools for triggering syncs and managing the
credential pool, feeds and scheduled tasks.

NOTE: Never use Optional parameters in MCP tools - they break MCP clients.
Use empty string "" for optional strings and 0 for optional numbers.
"""

from typing import Any, Dict, List

from mcp.server.fastmcp import Context

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import Credential, CredentialStatus, Feed, Item, SyncOptions
from feed_sync.runtime import get_runtime
from feed_sync.services.gateway import ApiError
from feed_sync.services.orchestrator import SyncInProgressError
from feed_sync.storage import database


def _credential_dict(credential: Credential) -> Dict[str, Any]:
    # never expose the secret
    return {
        "id": credential.id,
        "name": credential.name,
        "status": credential.status.value,
        "blacklisted_until": credential.blacklisted_until.isoformat() if credential.blacklisted_until else None,
        "created_at": credential.created_at.isoformat() if credential.created_at else None,
    }


def _feed_dict(feed: Feed) -> Dict[str, Any]:
    return {
        "id": feed.id,
        "source_id": feed.source_id,
        "title": feed.title,
        "description": feed.description,
        "credential_id": feed.credential_id,
        "last_sync_at": feed.last_sync_at.isoformat() if feed.last_sync_at else None,
    }


def _item_dict(item: Item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "feed_id": item.feed_id,
        "title": item.title,
        "url": item.url,
        "published_at": item.published_at.isoformat(),
        "materialized": item.materialized,
        "artifact_ref": item.artifact_ref,
    }


def _parse_feed_ids(feed_ids: str) -> List[int]:
    return [int(part) for part in feed_ids.replace(" ", "").split(",") if part]


async def sync_now(
    feed_ids: str = "",
    stale_threshold_hours: float = 0,
    materialize: bool = True,
    ctx: Context = None,
) -> Dict[str, Any]:
    """Run a sync immediately: refresh feeds, materialize notes, clean up old items.

    Feeds are chosen from the explicit id list if given, otherwise feeds not
    synced within stale_threshold_hours, otherwise all feeds. Fails fast if a
    sync is already running (scheduled or manual).

    Args:
        feed_ids: Comma-separated feed ids to sync (empty string for no explicit list)
        stale_threshold_hours: Only sync feeds older than this (0 means no threshold)
        materialize: Create notes for new items after refreshing (default: True)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - result: sync counters and the list of per-feed errors
        - error: string if the sync could not run
    """
    logger = get_logger(__name__)
    logger.info(f"sync_now called: feed_ids={feed_ids}, stale_threshold_hours={stale_threshold_hours}, materialize={materialize}")

    try:
        ids = _parse_feed_ids(feed_ids)
    except ValueError:
        return {
            "success": False,
            "error": f"Invalid feed_ids: {feed_ids}. Use comma-separated integers like '1,2,3'",
        }

    options = SyncOptions(
        feed_ids=ids or None,
        stale_threshold_hours=stale_threshold_hours if stale_threshold_hours > 0 else None,
        materialize=materialize,
    )

    try:
        result = await get_runtime().orchestrator.run(options)
    except SyncInProgressError as e:
        return {
            "success": False,
            "error": str(e),
        }

    return {
        "success": True,
        "result": result.to_dict(),
    }


async def materialize_pending(ctx: Context = None) -> Dict[str, Any]:
    """Create notes for every stored item that does not have one yet.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - created, skipped, failed: note counts
        - error: string if a sync is already running
    """
    logger = get_logger(__name__)
    logger.info("materialize_pending called")

    try:
        outcome = await get_runtime().orchestrator.materialize_pending()
    except SyncInProgressError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "created": outcome.created,
        "skipped": outcome.skipped,
        "failed": outcome.failed,
    }


async def get_sync_status(ctx: Context = None) -> Dict[str, Any]:
    """Report sync statistics, credential health and scheduler state.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - sync: feed/item totals, last sync time, whether a sync is running
        - credentials: count per status
        - scheduler_running: bool
    """
    logger = get_logger(__name__)
    logger.info("get_sync_status called")

    runtime = get_runtime()

    return {
        "success": True,
        "sync": await runtime.orchestrator.get_stats(),
        "credentials": await runtime.pool.get_stats(),
        "scheduler_running": runtime.scheduler.is_running,
    }


async def list_credentials(ctx: Context = None) -> Dict[str, Any]:
    """List all credentials in the pool with their status (secrets are never returned).

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of credentials
        - credentials: list of id, name, status, blacklisted_until, created_at
    """
    logger = get_logger(__name__)
    logger.info("list_credentials called")

    credentials = await database.list_credentials()

    return {
        "success": True,
        "count": len(credentials),
        "credentials": [_credential_dict(c) for c in credentials],
    }


async def add_credential(name: str, secret: str, ctx: Context = None) -> Dict[str, Any]:
    """Add a credential (platform account token) to the pool.

    Args:
        name: Unique display name for the credential
        secret: Access token obtained from the platform login
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - credential: the created credential (without secret)
        - error: string if the name already exists
    """
    logger = get_logger(__name__)
    logger.info(f"add_credential called: name={name}")

    if not name.strip() or not secret.strip():
        return {"success": False, "error": "Both name and secret are required"}

    try:
        credential = await database.add_credential(name.strip(), secret.strip())
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "credential": _credential_dict(credential),
    }


async def set_credential_status(credential_id: int, status: str, ctx: Context = None) -> Dict[str, Any]:
    """Set a credential's status explicitly.

    Use 'disabled' to take a credential out of rotation and 'active' to put it
    back (for example after re-authenticating an expired one).

    Args:
        credential_id: Database ID of the credential (from list_credentials)
        status: One of active, disabled, expired, blacklisted
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - credential: updated credential (without secret)
        - error: string if the status is invalid or the credential is not found
    """
    logger = get_logger(__name__)
    logger.info(f"set_credential_status called: credential_id={credential_id}, status={status}")

    try:
        new_status = CredentialStatus(status.strip().lower())
    except ValueError:
        valid = ", ".join(s.value for s in CredentialStatus)
        return {"success": False, "error": f"Invalid status '{status}'. Use one of: {valid}"}

    updated = await get_runtime().pool.set_status(credential_id, new_status)
    if not updated:
        return {"success": False, "error": f"Credential with id {credential_id} not found"}

    credential = await database.get_credential(credential_id)
    return {
        "success": True,
        "credential": _credential_dict(credential),
    }


async def list_feeds(ctx: Context = None) -> Dict[str, Any]:
    """List all followed feeds with their last sync time.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of feeds
        - feeds: list of feed objects
    """
    logger = get_logger(__name__)
    logger.info("list_feeds called")

    feeds = await database.list_feeds()

    return {
        "success": True,
        "count": len(feeds),
        "feeds": [_feed_dict(f) for f in feeds],
    }


async def add_feed(
    share_link: str = "",
    source_id: str = "",
    title: str = "",
    ctx: Context = None,
) -> Dict[str, Any]:
    """Follow a feed on the platform.

    Either give a share link (resolved through the platform with a pooled
    credential) or a known source_id and title.

    Args:
        share_link: Share link of any article from the account (empty string to skip)
        source_id: External account id, used when no share link is given
        title: Display title, used with source_id
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - feed: the created feed
        - error: string if resolution failed or the feed already exists
    """
    logger = get_logger(__name__)
    logger.info(f"add_feed called: share_link={share_link}, source_id={source_id}")

    runtime = get_runtime()
    description = ""
    credential = await runtime.pool.acquire_available()

    if share_link:
        if credential is None:
            return {"success": False, "error": "No active credential available. Add a credential first."}
        try:
            info = await runtime.client.get_feed_info(share_link, credential)
        except ApiError as e:
            await runtime.pool.record_api_error(credential.id, e)
            return {"success": False, "error": f"Failed to resolve share link: {e}"}
        if info is None:
            return {"success": False, "error": f"No feed found for share link {share_link}"}
        source_id, title, description = info.id, info.name, info.intro

    if not source_id:
        return {"success": False, "error": "Provide a share_link or a source_id"}

    try:
        feed = await database.add_feed(
            source_id=source_id,
            title=title or source_id,
            description=description,
            credential_id=credential.id if credential else None,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "feed": _feed_dict(feed),
    }


async def list_items(feed_id: int = 0, limit: int = 50, ctx: Context = None) -> Dict[str, Any]:
    """List stored items, newest first.

    Args:
        feed_id: Only items of this feed (0 for all feeds)
        limit: Maximum number of items to return (default: 50)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - count: number of items returned
        - items: list of item objects with materialization state
    """
    logger = get_logger(__name__)
    logger.info(f"list_items called: feed_id={feed_id}, limit={limit}")

    items = await database.list_items(feed_id if feed_id > 0 else None)
    if limit > 0:
        items = items[:limit]

    return {
        "success": True,
        "count": len(items),
        "items": [_item_dict(i) for i in items],
    }


async def list_tasks(ctx: Context = None) -> Dict[str, Any]:
    """List scheduled tasks with their interval and next run time.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - scheduler_running: bool
        - tasks: list of id, interval_minutes, enabled, last_run, next_run
    """
    logger = get_logger(__name__)
    logger.info("list_tasks called")

    scheduler = get_runtime().scheduler

    return {
        "success": True,
        "scheduler_running": scheduler.is_running,
        "tasks": [
            {
                "id": t.id,
                "interval_minutes": t.interval_minutes,
                "enabled": t.enabled,
                "last_run": t.last_run.isoformat() if t.last_run else None,
                "next_run": t.next_run.isoformat(),
            }
            for t in scheduler.list_tasks()
        ],
    }


async def run_task(task_id: str, ctx: Context = None) -> Dict[str, Any]:
    """Run a scheduled task immediately, outside its schedule.

    Args:
        task_id: ID of the task (from list_tasks)
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - next_run: the task's rescheduled next run time
        - error: string if the task is not found
    """
    logger = get_logger(__name__)
    logger.info(f"run_task called: task_id={task_id}")

    scheduler = get_runtime().scheduler
    try:
        await scheduler.run_now(task_id)
    except KeyError:
        return {"success": False, "error": f"Task '{task_id}' not found"}

    task = scheduler.get_task(task_id)
    return {
        "success": True,
        "next_run": task.next_run.isoformat() if task else None,
    }


async def check_platform_health(ctx: Context = None) -> Dict[str, Any]:
    """Check whether the content platform is reachable.

    Args:
        ctx: MCP Context object (injected automatically)

    Returns:
        Dictionary with:
        - success: bool
        - healthy: whether the platform answered
        - platform_url: the configured platform base URL
    """
    logger = get_logger(__name__)
    logger.info("check_platform_health called")

    runtime = get_runtime()
    healthy = await runtime.client.check_health()

    return {
        "success": True,
        "healthy": healthy,
        "platform_url": runtime.client.base_url,
    }


# List of sync tools for registration
sync_tools = [
    sync_now,
    materialize_pending,
    get_sync_status,
    list_credentials,
    add_credential,
    set_credential_status,
    list_feeds,
    add_feed,
    list_items,
    list_tasks,
    run_task,
    check_platform_health,
]
