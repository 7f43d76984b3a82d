"""Markdown note materializer.

Writes one Markdown note per item into an output directory:

    <output_dir>/<feed title>/<item id>-<item title>.md

The item id prefix lets artifacts be removed by id after their items have
already been deleted from storage.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import Feed, Item, MaterializeResult
from feed_sync.storage.database import StorageError

DEFAULT_NOTE_TEMPLATE = """---
title: {{title}}
url: {{url}}
published: {{publishedAt}}
feed: {{feedName}}
tags: [{{tags}}]
---

# {{title}}

> Published: {{publishedAt}}
> Source: [{{feedName}}]({{url}})
"""

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|#^\[\]]')
_TAG_CHARS = re.compile(r"[^\w\s-]", re.UNICODE)


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Make a string safe to use as a file or folder name."""
    cleaned = _UNSAFE_CHARS.sub("", name)
    cleaned = re.sub(r"\s+", " ", cleaned).strip().strip(".")
    return cleaned[:max_length] or "untitled"


def feed_tag(feed_title: str) -> str:
    tag = _TAG_CHARS.sub("", feed_title)
    return re.sub(r"\s+", "-", tag.strip()).lower()


class MarkdownMaterializer:
    """Materializes items as Markdown notes on the local filesystem.

    Args:
        output_dir: Root folder for notes
        storage: Storage backend used to record materialized items
        template: Note template with {{placeholder}} variables
        add_tags: Whether to fill {{tags}}
    """

    def __init__(self, output_dir: Path, storage, template: str = DEFAULT_NOTE_TEMPLATE, add_tags: bool = True):
        self.output_dir = Path(output_dir)
        self.storage = storage
        self.template = template
        self.add_tags = add_tags

    def note_path(self, item: Item, feed: Feed) -> Path:
        folder = self.output_dir / sanitize_filename(feed.title)
        return folder / f"{item.id}-{sanitize_filename(item.title)}.md"

    def render(self, item: Item, feed: Feed) -> str:
        tags = ["feed-sync", feed_tag(feed.title)] if self.add_tags else []
        values = {
            "title": item.title,
            "url": item.url,
            "publishedAt": item.published_at.strftime("%Y-%m-%d %H:%M"),
            "feedName": feed.title,
            "date": datetime.now(timezone.utc).strftime("%Y-%m-%d"),
            "tags": ", ".join(t for t in tags if t),
        }

        content = self.template
        for key, value in values.items():
            content = content.replace("{{" + key + "}}", value)
        return content

    async def materialize_item(self, item: Item, feed: Feed) -> Optional[bool]:
        """Write the note for one item.

        Returns:
            True if created, False if a note already existed, None on failure
        """
        logger = get_logger(__name__)
        path = self.note_path(item, feed)

        try:
            if path.exists():
                logger.warning(f"Note already exists: {path}")
                await self.storage.mark_item_materialized(item.id, str(path))
                return False

            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(item, feed), encoding="utf-8")
            await self.storage.mark_item_materialized(item.id, str(path))
            logger.info(f"Created note: {path}")
            return True
        except OSError as e:
            logger.error(f"Failed to create note for item {item.id}: {e}")
            return None
        except (StorageError, aiosqlite.Error) as e:
            logger.error(f"Failed to record note for item {item.id}: {e}")
            return None

    async def materialize_batch(self, items: List[Item], feed_lookup: Dict[int, Feed]) -> MaterializeResult:
        """Create notes for a batch of items.

        A failing item is counted and the batch continues.
        """
        logger = get_logger(__name__)
        result = MaterializeResult()

        for item in items:
            feed = feed_lookup.get(item.feed_id)
            if feed is None:
                logger.warning(f"Feed not found for item {item.id}")
                result.failed += 1
                continue

            outcome = await self.materialize_item(item, feed)
            if outcome is True:
                result.created += 1
            elif outcome is False:
                result.skipped += 1
            else:
                result.failed += 1

        return result

    async def delete_artifacts_by_item_ids(self, item_ids: List[int]) -> int:
        """Delete the notes of the given items.

        Missing notes are not an error; they simply do not count.

        Returns:
            Number of notes deleted
        """
        logger = get_logger(__name__)
        if not item_ids or not self.output_dir.exists():
            return 0

        wanted = {str(item_id) for item_id in item_ids}
        deleted = 0

        for path in self.output_dir.glob("*/*.md"):
            prefix = path.name.split("-", 1)[0]
            if prefix not in wanted:
                continue
            try:
                path.unlink()
                deleted += 1
                logger.info(f"Deleted note: {path}")
            except FileNotFoundError:
                logger.debug(f"Note already gone: {path}")
            except OSError as e:
                logger.error(f"Failed to delete note {path}: {e}")

        return deleted
