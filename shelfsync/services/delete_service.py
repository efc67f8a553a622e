"""Deleting items: payload, catalog record, cached copy."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from shelfsync.exceptions import NotFoundError, OperationError
from shelfsync.filesystem.catalog_codec import find_record
from shelfsync.services.progress import BatchPhase, EventKind, ProgressStream
from shelfsync.services.transfer_service import (
    BatchResult,
    ItemOutcome,
    cache_key_for,
    cancel_requested,
    invalidate_cache,
    locate_blob,
    refresh_summary,
    step,
)

if TYPE_CHECKING:
    import asyncio

    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import Library, ShelfLocation

logger = logging.getLogger(__name__)


async def delete_item(
    library: Library,
    shelf: ShelfLocation,
    item_id: str,
    *,
    progress: ProgressStream | None = None,
) -> ItemRecord:
    """Delete an item's asset, then its record, then its cached copy.

    A missing asset is tolerated so dangling records can still be removed.
    """
    progress = progress or ProgressStream.disabled()
    catalog = library.catalog(shelf)

    with step(item_id, "locate-source"):
        record = find_record(await catalog.load(), item_id)
        if record is None:
            msg = f"{item_id} not found on {shelf.label}"
            raise NotFoundError(msg)

    progress.item(EventKind.ITEM_STARTED, item_id, "deleting")
    source = record.source
    try:
        with step(item_id, "locate-source"):
            blob = await locate_blob(library.blobs, record)
    except OperationError as exc:
        if not isinstance(exc.cause, NotFoundError):
            raise
        logger.warning("Asset for %s already gone, removing the record only: %s", item_id, exc.cause)
    else:
        with step(item_id, "delete-source"):
            await library.blobs.delete_blob(source.owner, source.repo, blob.id)

    with step(item_id, "commit-source"):
        records, found = await catalog.remove(item_id, f"Delete {item_id}")
        if not found:
            msg = f"{item_id} disappeared from {shelf.label} during delete"
            raise NotFoundError(msg)

    invalidate_cache(library, cache_key_for(record))
    await refresh_summary(
        library, shelf, item_count=len(records), removed=[item_id], message=f"Remove {item_id}"
    )
    logger.info("Deleted %s from %s", item_id, shelf.label)
    progress.item(EventKind.ITEM_DONE, item_id, "deleted")
    return record


async def delete_items(
    library: Library,
    shelf: ShelfLocation,
    item_ids: list[str],
    *,
    progress: ProgressStream | None = None,
    cancel: asyncio.Event | None = None,
) -> BatchResult:
    """Delete several items one at a time."""
    progress = progress or ProgressStream.disabled()
    result = BatchResult()
    progress.phase(BatchPhase.PROCESSING, f"{len(item_ids)} items")
    for index, item_id in enumerate(item_ids, start=1):
        if cancel_requested(cancel):
            result = result.as_cancelled()
            break
        try:
            record = await delete_item(library, shelf, item_id, progress=progress)
        except OperationError as exc:
            logger.error("Delete of %s failed: %s", item_id, exc)
            progress.item(EventKind.ITEM_FAILED, item_id, str(exc), done=index, total=len(item_ids))
            result = result.merged(ItemOutcome.failed(item_id, exc.step, exc))
            continue
        result = result.merged(ItemOutcome.success(record))
    progress.phase(BatchPhase.DONE, result.summary())
    return result
