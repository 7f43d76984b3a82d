"""Storage layer for feed_sync."""

from .database import (
    StorageError,
    get_database,
    init_database,
    add_credential,
    get_credential,
    list_credentials,
    find_credentials_by_status,
    update_credential_status,
    add_feed,
    get_feed,
    list_feeds,
    find_feeds_needing_sync,
    update_feed_last_sync,
    insert_items_if_absent,
    find_unmaterialized,
    mark_item_materialized,
    list_items,
    count_items,
    delete_items_older_than,
    close_database,
)

__all__ = [
    "StorageError",
    "get_database",
    "init_database",
    "add_credential",
    "get_credential",
    "list_credentials",
    "find_credentials_by_status",
    "update_credential_status",
    "add_feed",
    "get_feed",
    "list_feeds",
    "find_feeds_needing_sync",
    "update_feed_last_sync",
    "insert_items_if_absent",
    "find_unmaterialized",
    "mark_item_materialized",
    "list_items",
    "count_items",
    "delete_items_older_than",
    "close_database",
]
