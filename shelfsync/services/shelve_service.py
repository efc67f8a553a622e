"""Adding a local file to a shelf."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from shelfsync.exceptions import ConflictError
from shelfsync.schemas.item import Checksum, ItemRecord, Meta, Source
from shelfsync.services.datetime_service import format_rfc3339, now_utc
from shelfsync.services.progress import EventKind, ProgressStream
from shelfsync.services.slug_service import asset_name_for, generate_item_id, validate_item_id
from shelfsync.services.transfer_service import (
    buffered_file,
    cache_key_for,
    refresh_summary,
    step,
    upload_payload,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from shelfsync.services.transfer_service import Library, ShelfLocation

logger = logging.getLogger(__name__)


async def shelve_item(
    library: Library,
    path: Path,
    shelf: ShelfLocation,
    *,
    title: str = "",
    author: str = "",
    year: int = 0,
    tags: Sequence[str] = (),
    item_id: str | None = None,
    cache: bool = False,
    progress: ProgressStream | None = None,
) -> ItemRecord:
    """Upload a local file to the shelf's release and add its catalog record.

    The id defaults to a slug of the title (or file name).  An id already in
    the catalog, or an asset name already in the release, is a conflict.
    """
    progress = progress or ProgressStream.disabled()
    title = title.strip() or path.stem
    item_id = validate_item_id(item_id) if item_id else generate_item_id(title)
    extension = path.suffix.lstrip(".").lower()
    asset = asset_name_for(item_id, extension)
    progress.item(EventKind.ITEM_STARTED, item_id, f"adding {path.name}")

    async with buffered_file(path) as payload:
        with step(item_id, "ensure-destination"):
            grouping = await library.blobs.get_or_create_grouping(
                shelf.owner, shelf.repo, shelf.release
            )

        with step(item_id, "locate-source"):
            catalog = library.catalog(shelf)
            if await catalog.find(item_id) is not None:
                msg = f"id {item_id} already exists on {shelf.label}"
                raise ConflictError(msg)
            if await library.blobs.find_blob(shelf.owner, shelf.repo, grouping.id, asset):
                msg = f"{asset} already exists in {shelf.owner}/{shelf.repo}@{shelf.release}"
                raise ConflictError(msg)

        with step(item_id, "upload"):
            await upload_payload(library.blobs, shelf, grouping.id, asset, payload)
        progress.item(EventKind.BYTES, item_id, done=payload.size, total=payload.size)

        record = ItemRecord(
            id=item_id,
            title=title,
            author=author,
            year=year,
            tags=list(tags),
            format=extension,
            checksum=Checksum(sha256=payload.sha256),
            size_bytes=payload.size,
            source=Source(owner=shelf.owner, repo=shelf.repo, release=shelf.release, asset=asset),
            meta=Meta(added_at=format_rfc3339(now_utc())),
        )

        with step(item_id, "commit-destination"):
            records = await catalog.append(record, f"Add {item_id}")

        if cache and library.cache is not None:
            try:
                await asyncio.to_thread(library.cache.store_file, cache_key_for(record), payload.path)
            except OSError as exc:
                logger.warning("Added %s but could not cache it: %s", item_id, exc)

    await refresh_summary(library, shelf, item_count=len(records), added=[record], message=f"Add {item_id}")
    logger.info("Added %s to %s", item_id, shelf.label)
    progress.item(EventKind.ITEM_DONE, item_id, f"added to {shelf.label}")
    return record
