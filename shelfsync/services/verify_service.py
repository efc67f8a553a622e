"""Verify service: cross-check a shelf's catalog against its release assets.

Two kinds of drift are reported: records whose asset is gone from the release
(dangling records) and assets no record points at (orphan assets).  Repairing
removes dangling records in one catalog commit; orphan assets are only
deleted on explicit request since they may be the sole copy of a payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shelfsync.exceptions import NotFoundError
from shelfsync.services.transfer_service import (
    cache_key_for,
    delete_blob_best_effort,
    invalidate_cache,
    refresh_summary,
)

if TYPE_CHECKING:
    from shelfsync.github.base import Blob
    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import Library, ShelfLocation

logger = logging.getLogger(__name__)

ReleaseKey = tuple[str, str, str]


@dataclass(frozen=True)
class OrphanBlob:
    release: str
    blob: Blob


@dataclass
class VerifyReport:
    """What verify found on one shelf, and what it repaired."""

    shelf: str
    record_count: int = 0
    blob_count: int = 0
    dangling: list[ItemRecord] = field(default_factory=list)
    orphans: list[OrphanBlob] = field(default_factory=list)
    missing_releases: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return len(self.dangling) + len(self.orphans)

    @property
    def in_sync(self) -> bool:
        return self.issue_count == 0


async def _list_release(library: Library, key: ReleaseKey) -> dict[str, Blob] | None:
    owner, repo, tag = key
    try:
        grouping = await library.blobs.get_grouping(owner, repo, tag)
    except NotFoundError:
        return None
    return {blob.name: blob for blob in await library.blobs.list_blobs(owner, repo, grouping.id)}


async def verify_shelf(
    library: Library,
    shelf: ShelfLocation,
    *,
    fix: bool = False,
    delete_orphans: bool = False,
) -> VerifyReport:
    """Compare the catalog with the assets of every release it references.

    With fix, dangling records are removed from the catalog and their cached
    copies dropped.  With delete_orphans, unreferenced assets in the shelf's
    own repository are deleted (best effort).
    """
    catalog = library.catalog(shelf)
    records = await catalog.load_or_empty()
    report = VerifyReport(shelf=shelf.label, record_count=len(records))

    keys: set[ReleaseKey] = {(shelf.owner, shelf.repo, shelf.release)}
    keys.update((r.source.owner, r.source.repo, r.source.release) for r in records)
    listings: dict[ReleaseKey, dict[str, Blob]] = {}
    for key in sorted(keys):
        listing = await _list_release(library, key)
        if listing is None:
            logger.warning("Release %s not found in %s/%s", key[2], key[0], key[1])
            report.missing_releases.append(f"{key[0]}/{key[1]}@{key[2]}")
            listing = {}
        listings[key] = listing
    report.blob_count = sum(len(listing) for listing in listings.values())

    referenced: set[tuple[str, str, str, str]] = set()
    for record in records:
        source = record.source
        referenced.add((source.owner, source.repo, source.release, source.asset))
        if source.asset not in listings[(source.owner, source.repo, source.release)]:
            report.dangling.append(record)

    for (owner, repo, tag), listing in sorted(listings.items()):
        if (owner, repo) != (shelf.owner, shelf.repo):
            continue
        for name, blob in sorted(listing.items()):
            if (owner, repo, tag, name) not in referenced:
                report.orphans.append(OrphanBlob(release=tag, blob=blob))

    logger.info(
        "Verified %s: %d records, %d assets, %d dangling, %d orphaned",
        shelf.label,
        report.record_count,
        report.blob_count,
        len(report.dangling),
        len(report.orphans),
    )

    if fix and report.dangling:
        await _remove_dangling(library, shelf, report)
    if delete_orphans:
        for orphan in report.orphans:
            if await delete_blob_best_effort(library.blobs, shelf.owner, shelf.repo, orphan.blob):
                report.deleted.append(orphan.blob.name)
    return report


async def _remove_dangling(library: Library, shelf: ShelfLocation, report: VerifyReport) -> None:
    dangling = {record.id for record in report.dangling}

    def drop(records: list[ItemRecord]) -> list[ItemRecord]:
        return [record for record in records if record.id not in dangling]

    remaining = await library.catalog(shelf).update(
        drop, f"verify: remove {len(dangling)} dangling records"
    )
    report.removed = sorted(dangling)
    for record in report.dangling:
        invalidate_cache(library, cache_key_for(record))
    await refresh_summary(
        library,
        shelf,
        item_count=len(remaining),
        removed=report.removed,
        message="Update README: verify cleanup",
    )
