"""Moving items between releases and between shelves.

There is no rollback.  Steps run in an order where any failure leaves the
payload duplicated rather than lost: the source is only touched after the
destination holds a verified copy.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from shelfsync.exceptions import ConflictError, OperationError
from shelfsync.filesystem.catalog_codec import append_record, find_record
from shelfsync.services.datetime_service import format_rfc3339, now_utc
from shelfsync.services.progress import BatchPhase, EventKind, ProgressStream
from shelfsync.services.transfer_service import (
    BatchResult,
    ItemOutcome,
    buffered_download,
    cache_key_for,
    cancel_requested,
    delete_blob_best_effort,
    invalidate_cache,
    locate_blob,
    refresh_summary,
    step,
    upload_payload,
)

if TYPE_CHECKING:
    import asyncio

    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import Library, ShelfLocation

logger = logging.getLogger(__name__)


async def _copy_payload(
    library: Library,
    record: ItemRecord,
    dst: ShelfLocation,
    *,
    keep_source: bool,
    progress: ProgressStream,
) -> tuple[str, int]:
    """Copy the payload to dst and drop the source asset. Returns the verified (sha256, size)."""
    item_id = record.id
    source = record.source

    with step(item_id, "ensure-destination"):
        grouping = await library.blobs.get_or_create_grouping(dst.owner, dst.repo, dst.release)

    with step(item_id, "locate-source"):
        source_blob = await locate_blob(library.blobs, record)
        existing = await library.blobs.find_blob(dst.owner, dst.repo, grouping.id, source.asset)
        if existing is not None:
            msg = f"{source.asset} already exists in {dst.owner}/{dst.repo}@{dst.release}"
            raise ConflictError(msg)

    with step(item_id, "download"):
        async with buffered_download(
            library.blobs,
            source.owner,
            source.repo,
            source_blob,
            expected_sha256=record.sha256,
            progress=progress,
            item_id=item_id,
        ) as payload:
            with step(item_id, "upload"):
                await upload_payload(library.blobs, dst, grouping.id, source.asset, payload)
            sha256, size = payload.sha256, payload.size

    if keep_source:
        logger.info("Keeping source asset %s for %s", source.describe(), item_id)
    else:
        await delete_blob_best_effort(library.blobs, source.owner, source.repo, source_blob)

    return sha256, size


def _relocated(record: ItemRecord, dst: ShelfLocation, sha256: str, size: int) -> ItemRecord:
    moved = record.relocated(owner=dst.owner, repo=dst.repo, release=dst.release)
    checksum = moved.checksum.model_copy(update={"sha256": sha256})
    meta = moved.meta
    if not meta.added_at:
        meta = meta.model_copy(update={"added_at": format_rfc3339(now_utc())})
    return moved.model_copy(update={"checksum": checksum, "size_bytes": size, "meta": meta})


async def move_item_to_shelf(
    library: Library,
    record: ItemRecord,
    src: ShelfLocation,
    dst: ShelfLocation,
    *,
    keep_source: bool = False,
    progress: ProgressStream | None = None,
) -> ItemRecord:
    """Move an item to another shelf repository. Returns the destination record.

    Raises OperationError naming the first essential step that failed.
    """
    progress = progress or ProgressStream.disabled()
    if src.same_repo(dst):
        msg = f"{record.id} is already on {dst.label}; use a release move"
        raise OperationError(record.id, "ensure-destination", ConflictError(msg))

    progress.item(EventKind.ITEM_STARTED, record.id, f"moving to {dst.label}")
    sha256, size = await _copy_payload(
        library, record, dst, keep_source=keep_source, progress=progress
    )
    moved = _relocated(record, dst, sha256, size)

    with step(record.id, "commit-source"):
        src_records, found = await library.catalog(src).remove(
            record.id, f"Move {record.id} to {dst.label}"
        )
        if not found:
            logger.warning("%s was not in the catalog of %s", record.id, src.label)

    with step(record.id, "commit-destination"):
        dst_records = await library.catalog(dst).append(moved, f"Move {record.id} from {src.label}")

    invalidate_cache(library, cache_key_for(record))

    await refresh_summary(
        library, src, item_count=len(src_records), removed=[record.id], message=f"Remove {record.id}"
    )
    await refresh_summary(
        library, dst, item_count=len(dst_records), added=[moved], message=f"Add {record.id}"
    )

    logger.info("Moved %s from %s to %s", record.id, src.label, dst.label)
    progress.item(EventKind.ITEM_DONE, record.id, f"moved to {dst.label}")
    return moved


async def move_item_to_release(
    library: Library,
    record: ItemRecord,
    shelf: ShelfLocation,
    release: str,
    *,
    keep_source: bool = False,
    progress: ProgressStream | None = None,
) -> ItemRecord:
    """Move an item's payload to another release of the same shelf."""
    progress = progress or ProgressStream.disabled()
    if release == record.source.release:
        msg = f"{record.id} is already in release {release}"
        raise OperationError(record.id, "ensure-destination", ConflictError(msg))

    dst = shelf.with_release(release)
    progress.item(EventKind.ITEM_STARTED, record.id, f"moving to release {release}")
    sha256, size = await _copy_payload(
        library, record, dst, keep_source=keep_source, progress=progress
    )
    moved = _relocated(record, dst, sha256, size)

    def replace(records: list[ItemRecord]) -> list[ItemRecord]:
        if find_record(records, record.id) is None:
            logger.warning("%s was not in the catalog of %s, adding it", record.id, shelf.label)
        return append_record(records, moved)

    with step(record.id, "commit-destination"):
        await library.catalog(shelf).update(replace, f"Move {record.id} to release {release}")

    logger.info("Moved %s to release %s of %s", record.id, release, shelf.label)
    progress.item(EventKind.ITEM_DONE, record.id, f"moved to release {release}")
    return moved


async def move_item(
    library: Library,
    record: ItemRecord,
    src: ShelfLocation,
    dst: ShelfLocation,
    *,
    keep_source: bool = False,
    progress: ProgressStream | None = None,
) -> ItemRecord:
    """Dispatch to a release move within a shelf or a move across shelves."""
    if src.same_repo(dst):
        return await move_item_to_release(
            library, record, src, dst.release, keep_source=keep_source, progress=progress
        )
    return await move_item_to_shelf(
        library, record, src, dst, keep_source=keep_source, progress=progress
    )


async def move_items(
    library: Library,
    item_ids: list[str],
    src: ShelfLocation,
    dst: ShelfLocation,
    *,
    keep_source: bool = False,
    progress: ProgressStream | None = None,
    cancel: asyncio.Event | None = None,
) -> BatchResult:
    """Move several items one at a time. Failures are counted, never fatal to the batch."""
    progress = progress or ProgressStream.disabled()
    result = BatchResult()

    progress.phase(BatchPhase.SCANNING)
    records = await library.catalog(src).load_or_empty()

    progress.phase(BatchPhase.PROCESSING)
    for index, item_id in enumerate(item_ids, start=1):
        if cancel_requested(cancel):
            logger.info("Move cancelled after %d of %d items", index - 1, len(item_ids))
            result = result.as_cancelled()
            break
        record = find_record(records, item_id)
        if record is None:
            logger.warning("Cannot move %s: not in %s", item_id, src.label)
            outcome = ItemOutcome.failed(item_id, "locate-source", LookupError("not in catalog"))
            progress.item(EventKind.ITEM_FAILED, item_id, "not in catalog", done=index, total=len(item_ids))
            result = result.merged(outcome)
            continue
        try:
            moved = await move_item(
                library, record, src, dst, keep_source=keep_source, progress=progress
            )
        except OperationError as exc:
            logger.error("Move of %s failed: %s", item_id, exc)
            progress.item(EventKind.ITEM_FAILED, item_id, str(exc), done=index, total=len(item_ids))
            result = result.merged(ItemOutcome.failed(item_id, exc.step, exc))
            continue
        result = result.merged(ItemOutcome.success(moved))

    progress.phase(BatchPhase.DONE, result.summary())
    return result
