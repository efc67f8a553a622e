"""Bulk imports: copying another shelf's items, and migrating files out of plain repositories.

Per batch: scanning -> picking -> processing -> committing -> done.  Items are
processed one at a time; a failed item is counted and the batch moves on.  The
destination catalog is committed once, after the loop, from the records the
loop produced.  The ledger only lets a rerun skip sources that were already
uploaded; duplicate payloads are also caught by digest against the destination.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from shelfsync.exceptions import ConflictError, NotFoundError, OperationError
from shelfsync.filesystem.catalog_codec import digest_index
from shelfsync.filesystem.ledger import release_asset_locator, repo_file_locator
from shelfsync.github.base import RepoFile
from shelfsync.schemas.item import Checksum, ItemRecord, Meta, Source
from shelfsync.schemas.ledger import LedgerEntry
from shelfsync.services.datetime_service import format_rfc3339, now_utc
from shelfsync.services.progress import BatchPhase, EventKind, ProgressStream
from shelfsync.services.slug_service import asset_name_for, id_from_path
from shelfsync.services.transfer_service import (
    BatchResult,
    ItemOutcome,
    buffered_bytes,
    buffered_download,
    cancel_requested,
    locate_blob,
    refresh_summary,
    step,
    upload_payload,
)

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence

    from shelfsync.filesystem.ledger import MigrationLedger
    from shelfsync.filesystem.toml_manager import MigrationSource
    from shelfsync.github.base import Grouping
    from shelfsync.services.transfer_service import BufferedPayload, Library, ShelfLocation

logger = logging.getLogger(__name__)

RecordPicker = Callable[[list[ItemRecord]], list[ItemRecord]]
FilePicker = Callable[[list[RepoFile]], list[RepoFile]]


@dataclass(frozen=True)
class RepoRef:
    """A plain repository at a ref, the source side of a migration."""

    owner: str
    repo: str
    ref: str = "main"

    @classmethod
    def from_source(cls, source: MigrationSource) -> RepoRef:
        return cls(owner=source.owner, repo=source.repo, ref=source.ref)


def route_source(path: str, source: MigrationSource) -> str | None:
    """Return the shelf the longest matching mapping prefix routes path to."""
    best_prefix = ""
    best_shelf: str | None = None
    for prefix, shelf in source.mapping.items():
        if path.startswith(prefix) and (best_shelf is None or len(prefix) > len(best_prefix)):
            best_prefix = prefix
            best_shelf = shelf
    return best_shelf


def find_route(
    path: str, sources: Sequence[MigrationSource]
) -> tuple[MigrationSource, str] | None:
    """Return the first (source, shelf) whose mapping routes path, or None."""
    for source in sources:
        shelf = route_source(path, source)
        if shelf is not None:
            return source, shelf
    return None


class _Snapshot:
    """Destination state taken once at scan time and extended as items land."""

    def __init__(self, records: list[ItemRecord]) -> None:
        self.digests = digest_index(records)
        self.ids = {record.id for record in records}

    def add(self, record: ItemRecord) -> None:
        self.ids.add(record.id)
        if record.sha256:
            self.digests.add(record.sha256)


def _record_ledger(
    ledger: MigrationLedger | None, locator: str, item_id: str, dst: ShelfLocation
) -> None:
    if ledger is None:
        return
    try:
        ledger.append(
            LedgerEntry(source=locator, item_id=item_id, shelf=dst.label, release=dst.release)
        )
    except OSError as exc:
        logger.warning("Could not record %s in the migration ledger: %s", locator, exc)


def _already_migrated(ledger: MigrationLedger | None, locator: str) -> bool:
    if ledger is None:
        return False
    try:
        return ledger.contains(locator)
    except (OSError, ValueError) as exc:
        logger.warning("Migration ledger unreadable, not skipping %s: %s", locator, exc)
        return False


async def _commit_batch(
    library: Library,
    dst: ShelfLocation,
    result: BatchResult,
    message: str,
    progress: ProgressStream,
) -> BatchResult:
    if not result.records:
        return result
    progress.phase(BatchPhase.COMMITTING, f"committing {len(result.records)} records")
    try:
        with step(dst.label, "commit-destination"):
            records = await library.catalog(dst).append_many(list(result.records), message)
    except OperationError as exc:
        logger.error("Batch commit to %s failed: %s", dst.label, exc)
        return result.commit_failed("commit-destination", exc.cause)
    await refresh_summary(
        library,
        dst,
        item_count=len(records),
        added=result.records,
        message=f"Add {len(result.records)} items",
    )
    return result


async def _scan_destination(
    library: Library, dst: ShelfLocation, progress: ProgressStream
) -> tuple[_Snapshot, Grouping]:
    progress.phase(BatchPhase.SCANNING, f"reading {dst.label}")
    snapshot = _Snapshot(await library.catalog(dst).load_or_empty())
    grouping = await library.blobs.get_or_create_grouping(dst.owner, dst.repo, dst.release)
    return snapshot, grouping


async def _import_record(
    library: Library,
    record: ItemRecord,
    dst: ShelfLocation,
    grouping: Grouping,
    locator: str,
    ledger: MigrationLedger | None,
    progress: ProgressStream,
) -> ItemRecord:
    source = record.source
    with step(record.id, "locate-source"):
        blob = await locate_blob(library.blobs, record)
        if await library.blobs.find_blob(dst.owner, dst.repo, grouping.id, source.asset):
            msg = f"{source.asset} already exists in {dst.owner}/{dst.repo}@{dst.release}"
            raise ConflictError(msg)

    with step(record.id, "download"):
        async with buffered_download(
            library.blobs,
            source.owner,
            source.repo,
            blob,
            expected_sha256=record.sha256,
            progress=progress,
            item_id=record.id,
        ) as payload:
            with step(record.id, "upload"):
                await upload_payload(library.blobs, dst, grouping.id, source.asset, payload)
            sha256, size = payload.sha256, payload.size

    _record_ledger(ledger, locator, record.id, dst)
    imported = record.relocated(owner=dst.owner, repo=dst.repo, release=dst.release)
    meta = imported.meta.model_copy(
        update={
            "migrated_from": locator,
            "added_at": imported.meta.added_at or format_rfc3339(now_utc()),
        }
    )
    return imported.model_copy(
        update={"checksum": Checksum(sha256=sha256), "size_bytes": size, "meta": meta}
    )


async def import_shelf(
    library: Library,
    src: ShelfLocation,
    dst: ShelfLocation,
    *,
    ledger: MigrationLedger | None = None,
    pick: RecordPicker | None = None,
    limit: int | None = None,
    progress: ProgressStream | None = None,
    cancel: asyncio.Event | None = None,
) -> BatchResult:
    """Copy items from another shelf's catalog and releases onto dst.

    The source shelf is left untouched.
    """
    progress = progress or ProgressStream.disabled()
    if src.same_repo(dst):
        msg = f"Cannot import {src.label} into itself"
        raise ConflictError(msg)

    progress.phase(BatchPhase.SCANNING, f"reading {src.label}")
    candidates = await library.catalog(src).load_or_empty()
    snapshot, grouping = await _scan_destination(library, dst, progress)

    progress.phase(BatchPhase.PICKING)
    if pick is not None:
        candidates = pick(candidates)
    if limit is not None:
        candidates = candidates[:limit]

    progress.phase(BatchPhase.PROCESSING, f"{len(candidates)} items")
    result = BatchResult()
    total = len(candidates)
    for index, record in enumerate(candidates, start=1):
        if cancel_requested(cancel):
            logger.info("Import cancelled after %d of %d items", index - 1, total)
            result = result.as_cancelled()
            break

        source = record.source
        locator = release_asset_locator(source.owner, source.repo, source.release, source.asset)
        if _already_migrated(ledger, locator):
            logger.info("Skipping %s: already imported", locator)
            progress.item(EventKind.ITEM_SKIPPED, record.id, "already imported", done=index, total=total)
            result = result.merged(ItemOutcome.skip(record.id))
            continue
        if record.sha256 and record.sha256 in snapshot.digests:
            logger.info("Skipping %s: identical payload already on %s", record.id, dst.label)
            progress.item(EventKind.ITEM_SKIPPED, record.id, "duplicate", done=index, total=total)
            result = result.merged(ItemOutcome.skip(record.id))
            continue
        if record.id in snapshot.ids:
            exc = ConflictError(f"id {record.id} already used on {dst.label}")
            progress.item(EventKind.ITEM_FAILED, record.id, str(exc), done=index, total=total)
            result = result.merged(ItemOutcome.failed(record.id, "locate-source", exc))
            continue

        progress.item(EventKind.ITEM_STARTED, record.id, done=index, total=total)
        try:
            imported = await _import_record(
                library, record, dst, grouping, locator, ledger, progress
            )
        except OperationError as exc:
            logger.error("Import of %s failed: %s", record.id, exc)
            progress.item(EventKind.ITEM_FAILED, record.id, str(exc), done=index, total=total)
            result = result.merged(ItemOutcome.failed(record.id, exc.step, exc))
            continue

        snapshot.add(imported)
        progress.item(EventKind.ITEM_DONE, record.id, done=index, total=total)
        result = result.merged(ItemOutcome.success(imported))

    result = await _commit_batch(
        library, dst, result, f"Import {len(result.records)} items from {src.label}", progress
    )
    progress.phase(BatchPhase.DONE, result.summary())
    return result


def _new_migrated_record(
    file: RepoFile,
    item_id: str,
    dst: ShelfLocation,
    payload: BufferedPayload,
    locator: str,
) -> ItemRecord:
    path = PurePosixPath(file.path)
    extension = path.suffix.lstrip(".").lower()
    return ItemRecord(
        id=item_id,
        title=path.stem,
        format=extension,
        checksum=Checksum(sha256=payload.sha256),
        size_bytes=payload.size,
        source=Source(
            owner=dst.owner,
            repo=dst.repo,
            release=dst.release,
            asset=asset_name_for(item_id, extension),
        ),
        meta=Meta(added_at=format_rfc3339(now_utc()), migrated_from=locator),
    )


async def _migrate_file(
    library: Library,
    origin: RepoRef,
    file: RepoFile,
    dst: ShelfLocation,
    grouping: Grouping,
    snapshot: _Snapshot,
    ledger: MigrationLedger | None,
) -> ItemRecord | None:
    """Move one repository file onto dst. Returns None when its payload is already there."""
    item_id = id_from_path(file.path)
    locator = repo_file_locator(origin.owner, origin.repo, file.path)

    with step(item_id, "download"):
        content = await library.files.get_file(origin.owner, origin.repo, file.path, origin.ref)
        if content is None:
            msg = f"{file.path} not found in {origin.owner}/{origin.repo}@{origin.ref}"
            raise NotFoundError(msg)

    async with buffered_bytes(content) as payload:
        if payload.sha256 in snapshot.digests:
            logger.info("Skipping %s: identical payload already on %s", file.path, dst.label)
            return None
        if item_id in snapshot.ids:
            msg = f"id {item_id} already used on {dst.label}"
            raise OperationError(item_id, "locate-source", ConflictError(msg))

        record = _new_migrated_record(file, item_id, dst, payload, locator)
        with step(item_id, "upload"):
            await upload_payload(library.blobs, dst, grouping.id, record.source.asset, payload)

    _record_ledger(ledger, locator, item_id, dst)
    snapshot.add(record)
    return record


async def migrate_repo(
    library: Library,
    origin: RepoRef,
    dst: ShelfLocation,
    *,
    extensions: Sequence[str] = (),
    paths: Sequence[str] | None = None,
    ledger: MigrationLedger | None = None,
    pick: FilePicker | None = None,
    limit: int | None = None,
    progress: ProgressStream | None = None,
    cancel: asyncio.Event | None = None,
) -> BatchResult:
    """Migrate files from a plain repository onto a shelf.

    ``paths`` restricts the batch to those files; otherwise the repository is
    listed and filtered by ``extensions``.
    """
    progress = progress or ProgressStream.disabled()

    progress.phase(BatchPhase.SCANNING, f"listing {origin.owner}/{origin.repo}@{origin.ref}")
    files = await library.files.list_files(origin.owner, origin.repo, origin.ref, extensions)
    if paths is not None:
        wanted = set(paths)
        files = [file for file in files if file.path in wanted]
    snapshot, grouping = await _scan_destination(library, dst, progress)

    progress.phase(BatchPhase.PICKING)
    if pick is not None:
        files = pick(files)
    if limit is not None:
        files = files[:limit]

    progress.phase(BatchPhase.PROCESSING, f"{len(files)} files")
    result = BatchResult()
    total = len(files)
    for index, file in enumerate(files, start=1):
        if cancel_requested(cancel):
            logger.info("Migration cancelled after %d of %d files", index - 1, total)
            result = result.as_cancelled()
            break

        locator = repo_file_locator(origin.owner, origin.repo, file.path)
        if _already_migrated(ledger, locator):
            logger.info("Skipping %s: already migrated", locator)
            progress.item(EventKind.ITEM_SKIPPED, file.path, "already migrated", done=index, total=total)
            result = result.merged(ItemOutcome.skip(file.path))
            continue

        progress.item(EventKind.ITEM_STARTED, file.path, done=index, total=total)
        try:
            record = await _migrate_file(library, origin, file, dst, grouping, snapshot, ledger)
        except OperationError as exc:
            logger.error("Migration of %s failed: %s", file.path, exc)
            progress.item(EventKind.ITEM_FAILED, file.path, str(exc), done=index, total=total)
            result = result.merged(ItemOutcome.failed(exc.item_id, exc.step, exc))
            continue

        if record is None:
            progress.item(EventKind.ITEM_SKIPPED, file.path, "duplicate", done=index, total=total)
            result = result.merged(ItemOutcome.skip(file.path))
            continue
        progress.item(EventKind.ITEM_DONE, record.id, file.path, done=index, total=total)
        result = result.merged(ItemOutcome.success(record))

    result = await _commit_batch(
        library,
        dst,
        result,
        f"Migrate {len(result.records)} files from {origin.owner}/{origin.repo}",
        progress,
    )
    progress.phase(BatchPhase.DONE, result.summary())
    return result


async def migrate_one(
    library: Library,
    origin: RepoRef,
    path: str,
    dst: ShelfLocation,
    *,
    ledger: MigrationLedger | None = None,
) -> ItemRecord | None:
    """Migrate a single file and commit it right away.

    Returns None when the file was already migrated or its payload is already
    on dst.  Raises OperationError on failure.
    """
    locator = repo_file_locator(origin.owner, origin.repo, path)
    if _already_migrated(ledger, locator):
        logger.info("Skipping %s: already migrated", locator)
        return None

    item_id = id_from_path(path)
    with step(item_id, "ensure-destination"):
        snapshot, grouping = await _scan_destination(library, dst, ProgressStream.disabled())

    file = RepoFile(path=path, sha="", size=0)
    record = await _migrate_file(library, origin, file, dst, grouping, snapshot, ledger)
    if record is None:
        return None

    with step(item_id, "commit-destination"):
        records = await library.catalog(dst).append(record, f"Migrate {path} from {origin.repo}")
    await refresh_summary(library, dst, item_count=len(records), added=[record], message=f"Add {item_id}")
    return record
