"""Cache service: fetching payloads into the local cache and clearing it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shelfsync.exceptions import ChecksumMismatchError
from shelfsync.filesystem.cache_store import CachedFile
from shelfsync.services.progress import EventKind, ProgressStream
from shelfsync.services.transfer_service import (
    buffered_download,
    cache_key_for,
    locate_blob,
    step,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shelfsync.filesystem.cache_store import CacheKey, CacheStore
    from shelfsync.schemas.item import ItemRecord
    from shelfsync.services.transfer_service import Library

logger = logging.getLogger(__name__)


@dataclass
class ClearResult:
    removed: list[CacheKey] = field(default_factory=list)
    skipped: list[CacheKey] = field(default_factory=list)


async def fetch_item(
    library: Library,
    record: ItemRecord,
    *,
    force: bool = False,
    progress: ProgressStream | None = None,
) -> CachedFile:
    """Make sure the item's payload is in the cache and return it.

    An existing copy is reused unless force is set.  A download that does not
    hash to the catalog checksum is removed and raises ChecksumMismatchError.
    """
    cache = library.cache
    if cache is None:
        msg = "fetch needs a local cache"
        raise ValueError(msg)
    progress = progress or ProgressStream.disabled()
    key = cache_key_for(record)

    if not force and cache.exists(key):
        if cache.has_been_modified(key, record.sha256):
            logger.info("Cached copy of %s differs from the catalog; keeping it", record.id)
        recorded = cache.recorded_digest(key) or ""
        path = cache.path(key)
        return CachedFile(path=path, sha256=recorded, size=path.stat().st_size)

    progress.item(EventKind.ITEM_STARTED, record.id, "downloading")
    with step(record.id, "locate-source"):
        blob = await locate_blob(library.blobs, record)

    with step(record.id, "download"):
        async with buffered_download(
            library.blobs,
            record.source.owner,
            record.source.repo,
            blob,
            progress=progress,
            item_id=record.id,
        ) as payload:
            cached = await asyncio.to_thread(cache.store_file, key, payload.path)

    if record.sha256 and cached.sha256 != record.sha256:
        await asyncio.to_thread(cache.remove, key)
        raise ChecksumMismatchError(record.sha256, cached.sha256, context=record.id)

    progress.item(EventKind.ITEM_DONE, record.id, str(cached.path))
    logger.info("Cached %s at %s", record.id, cached.path)
    return cached


def clear_cache(
    cache: CacheStore,
    records: Sequence[ItemRecord] = (),
    *,
    item_ids: Sequence[str] | None = None,
    force: bool = False,
) -> ClearResult:
    """Remove cached copies, keeping locally edited ones unless force is set.

    ``records`` supplies catalog checksums; an entry with no record is judged
    only by whether its file still matches what was stored.
    """
    by_key = {cache_key_for(record): record for record in records}
    wanted = set(item_ids) if item_ids is not None else None
    result = ClearResult()

    for entry in cache.entries():
        key = entry.key
        if wanted is not None and key.item_id not in wanted:
            continue
        record = by_key.get(key)
        if record is not None:
            modified = cache.has_been_modified(key, record.sha256)
        else:
            modified = (
                entry.recorded_sha256 is not None
                and cache.current_digest(key) != entry.recorded_sha256
            )
        if modified and not force:
            logger.warning("Keeping %s: cached copy has local changes (use force)", key.item_id)
            result.skipped.append(key)
            continue
        cache.remove(key)
        result.removed.append(key)

    return result
