"""Shelf README maintenance: item count and a short "Recently Added" list."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from shelfsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shelfsync.github.base import FileStore
    from shelfsync.schemas.item import ItemRecord

logger = logging.getLogger(__name__)

README_PATH = "README.md"
STATS_HEADING = "## Quick Stats"
RECENT_HEADING = "## Recently Added"
MAX_RECENT = 10


def _section_bounds(lines: list[str], heading: str) -> tuple[int, int] | None:
    """Return (heading index, index of the next heading or len(lines))."""
    for start, line in enumerate(lines):
        if line.startswith(heading):
            for end in range(start + 1, len(lines)):
                if lines[end].startswith("##"):
                    return start, end
            return start, len(lines)
    return None


def _entry_marker(item_id: str) -> str:
    return f"(`{item_id}`)"


def format_entry(record: ItemRecord) -> str:
    author = record.author or "Unknown"
    entry = f"- **{record.title}** by {author} {_entry_marker(record.id)}"
    if record.tags:
        entry += f" - Tags: {', '.join(record.tags)}"
    return entry


def update_stats(text: str, item_count: int, date: str | None = None) -> str:
    """Rewrite the Quick Stats section. Text without one is returned unchanged."""
    lines = text.split("\n")
    bounds = _section_bounds(lines, STATS_HEADING)
    if bounds is None:
        return text
    start, end = bounds
    date = date or now_utc().strftime("%Y-%m-%d")
    body = ["", f"- **Items**: {item_count}", f"- **Last Updated**: {date}", ""]
    return "\n".join([*lines[: start + 1], *body, *lines[end:]])


def add_recent(text: str, records: Iterable[ItemRecord]) -> str:
    """Put records at the top of Recently Added, keeping at most MAX_RECENT entries.

    The section is created after Quick Stats, or at the end, when missing.
    """
    new = list(records)
    if not new:
        return text
    new_entries = [format_entry(record) for record in reversed(new)]
    new_markers = [_entry_marker(record.id) for record in new]

    lines = text.split("\n")
    bounds = _section_bounds(lines, RECENT_HEADING)
    if bounds is not None:
        start, end = bounds
        kept = [
            line
            for line in lines[start + 1 : end]
            if line.startswith("- ") and not any(marker in line for marker in new_markers)
        ]
        entries = [*new_entries, *kept][:MAX_RECENT]
        tail = ["", *lines[end:]] if end < len(lines) else [""]
        return "\n".join([*lines[: start + 1], "", *entries, *tail])

    section = [RECENT_HEADING, "", *new_entries[:MAX_RECENT]]
    stats = _section_bounds(lines, STATS_HEADING)
    if stats is not None and stats[1] < len(lines):
        insert_at = stats[1]
        return "\n".join([*lines[:insert_at], *section, "", *lines[insert_at:]])
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join([*lines, "", *section, ""])


def remove_recent(text: str, item_id: str) -> str:
    """Drop an item's line from Recently Added."""
    lines = text.split("\n")
    bounds = _section_bounds(lines, RECENT_HEADING)
    if bounds is None:
        return text
    start, end = bounds
    marker = _entry_marker(item_id)
    body = [line for line in lines[start + 1 : end] if marker not in line]
    return "\n".join([*lines[: start + 1], *body, *lines[end:]])


class SummaryUpdater:
    """Applies README edits to one shelf repository.

    A shelf without a README is left alone.
    """

    def __init__(self, files: FileStore, owner: str, repo: str, path: str = README_PATH) -> None:
        self.files = files
        self.owner = owner
        self.repo = repo
        self.path = path

    async def apply(
        self,
        *,
        item_count: int,
        added: Iterable[ItemRecord] = (),
        removed: Iterable[str] = (),
        message: str = "Update README",
    ) -> bool:
        """Rewrite the README. Returns True if a commit was made."""
        data = await self.files.get_file(self.owner, self.repo, self.path)
        if data is None:
            logger.debug("No README in %s/%s, skipping summary update", self.owner, self.repo)
            return False

        original = data.decode("utf-8")
        text = original
        for item_id in removed:
            text = remove_recent(text, item_id)
        text = add_recent(text, added)
        text = update_stats(text, item_count)
        if text == original:
            return False
        await self.files.commit_file(self.owner, self.repo, self.path, text.encode("utf-8"), message)
        return True
