"""Sync service: push locally edited cached copies back to their shelf.

The blob store does not allow two assets with the same name, so the old asset
is deleted before the edited copy is uploaded.  The cached file is the backup
for that window.  A copy edited locally while the shelf also moved on is a
conflict and is left alone unless forced, since the upload would replace the
newer remote payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shelfsync.exceptions import ConflictError, OperationError
from shelfsync.filesystem.cache_store import Divergence
from shelfsync.schemas.item import Checksum
from shelfsync.services.progress import BatchPhase, EventKind, ProgressStream
from shelfsync.services.transfer_service import (
    BatchResult,
    ItemOutcome,
    buffered_file,
    cache_key_for,
    cancel_requested,
    step,
    upload_payload,
)

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence

    from shelfsync.filesystem.cache_store import CacheStore
    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import Library, ShelfLocation

logger = logging.getLogger(__name__)


@dataclass
class SyncPlan:
    """Cached items grouped by how they differ from the catalog."""

    to_upload: list[ItemRecord] = field(default_factory=list)
    conflicts: list[ItemRecord] = field(default_factory=list)
    remote_changed: list[ItemRecord] = field(default_factory=list)
    unchanged: list[ItemRecord] = field(default_factory=list)
    not_cached: list[ItemRecord] = field(default_factory=list)


def compute_sync_plan(
    cache: CacheStore, records: Sequence[ItemRecord], *, force: bool = False
) -> SyncPlan:
    """Classify every record by the state of its cached copy.

    Copies edited on both sides are conflicts unless force is set.
    """
    plan = SyncPlan()
    for record in records:
        divergence = cache.divergence(cache_key_for(record), record.sha256)
        if divergence is Divergence.LOCAL_EDIT or (divergence is Divergence.BOTH and force):
            plan.to_upload.append(record)
        elif divergence is Divergence.BOTH:
            plan.conflicts.append(record)
        elif divergence is Divergence.REMOTE_CHANGED:
            plan.remote_changed.append(record)
        elif divergence is Divergence.NONE:
            plan.unchanged.append(record)
        else:
            plan.not_cached.append(record)
    return plan


async def _push_cached_copy(
    library: Library, cache: CacheStore, record: ItemRecord, shelf: ShelfLocation
) -> ItemRecord:
    source = record.source
    key = cache_key_for(record)

    with step(record.id, "ensure-destination"):
        grouping = await library.blobs.get_or_create_grouping(
            source.owner, source.repo, source.release
        )

    async with buffered_file(cache.path(key)) as payload:
        with step(record.id, "delete-source"):
            old = await library.blobs.find_blob(source.owner, source.repo, grouping.id, source.asset)
            if old is not None:
                await library.blobs.delete_blob(source.owner, source.repo, old.id)
        with step(record.id, "upload"):
            await upload_payload(library.blobs, shelf, grouping.id, source.asset, payload)
        sha256, size = payload.sha256, payload.size

    return record.model_copy(update={"checksum": Checksum(sha256=sha256), "size_bytes": size})


async def sync_modified(
    library: Library,
    shelf: ShelfLocation,
    *,
    item_ids: Sequence[str] | None = None,
    force: bool = False,
    progress: ProgressStream | None = None,
    cancel: asyncio.Event | None = None,
) -> BatchResult:
    """Upload cached copies that were edited locally and update their checksums.

    Items whose only difference is a changed catalog checksum are reported as
    skipped; their cached copy is stale, not edited.  Items changed on both
    sides fail with a conflict unless force is set, in which case the local
    copy replaces the remote one.
    """
    progress = progress or ProgressStream.disabled()
    cache = library.cache
    if cache is None:
        msg = "sync needs a local cache"
        raise ValueError(msg)

    progress.phase(BatchPhase.SCANNING, f"reading {shelf.label}")
    records = await library.catalog(shelf).load_or_empty()
    if item_ids is not None:
        wanted = set(item_ids)
        records = [record for record in records if record.id in wanted]
    plan = compute_sync_plan(cache, records, force=force)

    result = BatchResult()
    for record in plan.conflicts:
        msg = f"{record.id} was edited locally and changed on the shelf; use force to overwrite"
        conflict = ConflictError(msg)
        logger.warning("%s", conflict)
        progress.item(EventKind.ITEM_FAILED, record.id, str(conflict))
        result = result.merged(ItemOutcome.failed(record.id, "conflict", conflict))
    for record in plan.remote_changed:
        logger.warning("%s changed on the shelf since it was cached; not uploading", record.id)
        progress.item(EventKind.ITEM_SKIPPED, record.id, "catalog changed since cached")
        result = result.merged(ItemOutcome.skip(record.id))

    progress.phase(BatchPhase.PROCESSING, f"{len(plan.to_upload)} modified items")
    for index, record in enumerate(plan.to_upload, start=1):
        if cancel_requested(cancel):
            result = result.as_cancelled()
            break
        progress.item(EventKind.ITEM_STARTED, record.id, done=index, total=len(plan.to_upload))
        try:
            updated = await _push_cached_copy(library, cache, record, shelf)
        except OperationError as exc:
            logger.error("Sync of %s failed: %s", record.id, exc)
            progress.item(EventKind.ITEM_FAILED, record.id, str(exc))
            result = result.merged(ItemOutcome.failed(record.id, exc.step, exc))
            continue
        result = result.merged(ItemOutcome.success(updated))

    if not result.records:
        progress.phase(BatchPhase.DONE, result.summary())
        return result

    progress.phase(BatchPhase.COMMITTING)
    try:
        with step(shelf.label, "commit-destination"):
            await library.catalog(shelf).append_many(
                list(result.records), f"Sync {len(result.records)} modified items"
            )
    except OperationError as exc:
        logger.error("Sync commit to %s failed: %s", shelf.label, exc)
        result = result.commit_failed("commit-destination", exc.cause)
    else:
        for updated in result.records:
            cache.mark_synced(cache_key_for(updated), updated.sha256, updated.size_bytes)

    progress.phase(BatchPhase.DONE, result.summary())
    return result
