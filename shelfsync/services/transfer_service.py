"""Shared building blocks for operations that move payloads between stores."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import mimetypes
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from shelfsync.exceptions import (
    ChecksumMismatchError,
    NotFoundError,
    OperationError,
    ShelfError,
    TransientIOError,
)
from shelfsync.filesystem.cache_store import CacheKey
from shelfsync.filesystem.catalog_codec import DEFAULT_CATALOG_PATH
from shelfsync.github.base import DEFAULT_CONTENT_TYPE
from shelfsync.services.catalog_service import CatalogStore
from shelfsync.services.checksum_service import (
    CHUNK_SIZE,
    ChecksumReader,
    ChecksumStream,
    hash_bytes,
)
from shelfsync.services.progress import ProgressReader, ProgressStream
from shelfsync.services.readme_service import SummaryUpdater

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator

    from shelfsync.filesystem.cache_store import CacheStore
    from shelfsync.filesystem.toml_manager import ShelfConfig
    from shelfsync.github.base import Blob, BlobStore, FileStore
    from shelfsync.schemas.item import ItemRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShelfLocation:
    """A shelf repository plus the release new payloads go to."""

    owner: str
    repo: str
    release: str
    catalog_path: str = DEFAULT_CATALOG_PATH
    name: str = ""

    @classmethod
    def from_config(
        cls,
        shelf: ShelfConfig,
        *,
        global_owner: str = "",
        default_release: str = "",
        release: str | None = None,
    ) -> ShelfLocation:
        owner = shelf.effective_owner(global_owner)
        if not owner:
            msg = f"Shelf {shelf.name!r} has no owner and no global owner is configured"
            raise ValueError(msg)
        return cls(
            owner=owner,
            repo=shelf.repo,
            release=release or shelf.effective_release(default_release),
            catalog_path=shelf.effective_catalog_path(),
            name=shelf.name,
        )

    @property
    def label(self) -> str:
        return self.name or f"{self.owner}/{self.repo}"

    def with_release(self, release: str) -> ShelfLocation:
        return dataclasses.replace(self, release=release)

    def same_repo(self, other: ShelfLocation) -> bool:
        return (self.owner, self.repo) == (other.owner, other.repo)


@dataclass
class Library:
    """The stores an operation works against."""

    blobs: BlobStore
    files: FileStore
    cache: CacheStore | None = None
    update_summaries: bool = True

    def catalog(self, location: ShelfLocation) -> CatalogStore:
        return CatalogStore(self.files, location.owner, location.repo, location.catalog_path)


@dataclass(frozen=True)
class ItemFailure:
    item_id: str
    step: str
    message: str


@dataclass(frozen=True)
class ItemOutcome:
    """What happened to one item of a batch."""

    item_id: str
    record: ItemRecord | None = None
    failure: ItemFailure | None = None
    skipped: bool = False

    @classmethod
    def success(cls, record: ItemRecord) -> ItemOutcome:
        return cls(item_id=record.id, record=record)

    @classmethod
    def skip(cls, item_id: str) -> ItemOutcome:
        return cls(item_id=item_id, skipped=True)

    @classmethod
    def failed(cls, item_id: str, step: str, exc: BaseException) -> ItemOutcome:
        cause = exc.cause if isinstance(exc, OperationError) else exc
        return cls(item_id=item_id, failure=ItemFailure(item_id, step, str(cause)))


@dataclass(frozen=True)
class BatchResult:
    """Accumulated outcome of a bulk operation. Each item's outcome is merged in turn."""

    success_count: int = 0
    fail_count: int = 0
    skipped_count: int = 0
    records: tuple[ItemRecord, ...] = ()
    failures: tuple[ItemFailure, ...] = ()
    skipped: tuple[str, ...] = ()
    cancelled: bool = False

    def merged(self, outcome: ItemOutcome) -> BatchResult:
        if outcome.failure is not None:
            return dataclasses.replace(
                self,
                fail_count=self.fail_count + 1,
                failures=(*self.failures, outcome.failure),
            )
        if outcome.skipped:
            return dataclasses.replace(
                self,
                skipped_count=self.skipped_count + 1,
                skipped=(*self.skipped, outcome.item_id),
            )
        if outcome.record is None:
            return dataclasses.replace(self, success_count=self.success_count + 1)
        return dataclasses.replace(
            self,
            success_count=self.success_count + 1,
            records=(*self.records, outcome.record),
        )

    def as_cancelled(self) -> BatchResult:
        return dataclasses.replace(self, cancelled=True)

    def commit_failed(self, step: str, exc: BaseException) -> BatchResult:
        """Turn every produced record into a failure after the batch commit failed."""
        failures = tuple(ItemFailure(record.id, step, str(exc)) for record in self.records)
        return dataclasses.replace(
            self,
            success_count=self.success_count - len(self.records),
            fail_count=self.fail_count + len(failures),
            records=(),
            failures=(*self.failures, *failures),
        )

    def summary(self) -> str:
        text = f"{self.success_count} succeeded, {self.fail_count} failed"
        if self.skipped_count:
            text += f", {self.skipped_count} skipped"
        if self.cancelled:
            text += " (cancelled)"
        return text


@contextlib.contextmanager
def step(item_id: str, name: str) -> Iterator[None]:
    """Attribute any failure inside the block to the named step of item_id."""
    try:
        yield
    except OperationError:
        raise
    except (ShelfError, OSError, ValueError) as exc:
        raise OperationError(item_id, name, exc) from exc


def cancel_requested(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def cache_key_for(record: ItemRecord) -> CacheKey:
    return CacheKey(
        owner=record.source.owner,
        repo=record.source.repo,
        item_id=record.id,
        blob_name=record.source.asset,
    )


def content_type_for(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_CONTENT_TYPE


@dataclass
class BufferedPayload:
    """A payload held in a local temporary file, with its digest."""

    path: Path
    sha256: str
    size: int


def _new_temp_file() -> Path:
    fd, name = tempfile.mkstemp(prefix="shelfsync-", suffix=".part")
    os.close(fd)
    return Path(name)


async def file_chunks(path: Path, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read a local file as an async chunk stream without blocking the loop."""
    handle = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        await asyncio.to_thread(handle.close)


@contextlib.asynccontextmanager
async def buffered_download(
    blobs: BlobStore,
    owner: str,
    repo: str,
    blob: Blob,
    *,
    expected_sha256: str = "",
    progress: ProgressStream | None = None,
    item_id: str = "",
) -> AsyncIterator[BufferedPayload]:
    """Download a blob into a temporary file and verify it.

    The byte count must equal the blob's size, and when expected_sha256 is
    given the digest must match it.  The file is removed on exit.
    """
    path = await asyncio.to_thread(_new_temp_file)
    try:
        chunks: AsyncIterable[bytes] = blobs.download_blob(owner, repo, blob.id)
        if progress is not None:
            chunks = ProgressReader(chunks, progress, item_id=item_id, total=blob.size)
        hashed = ChecksumStream(chunks)
        handle = await asyncio.to_thread(open, path, "wb")
        try:
            async for chunk in hashed:
                await asyncio.to_thread(handle.write, chunk)
        finally:
            await asyncio.to_thread(handle.close)

        if hashed.size != blob.size:
            msg = f"short download of {blob.name}: got {hashed.size} of {blob.size} bytes"
            raise TransientIOError(msg)
        if expected_sha256 and hashed.sha256 != expected_sha256:
            raise ChecksumMismatchError(expected_sha256, hashed.sha256, context=blob.name)
        yield BufferedPayload(path=path, sha256=hashed.sha256, size=hashed.size)
    finally:
        await asyncio.to_thread(path.unlink, True)


def _copy_through_digest(source: Path, dest: Path) -> tuple[str, int]:
    with open(source, "rb") as raw, open(dest, "wb") as out:
        reader = ChecksumReader(raw)
        for chunk in iter(lambda: reader.read(CHUNK_SIZE), b""):
            out.write(chunk)
    return reader.sha256, reader.size


@contextlib.asynccontextmanager
async def buffered_file(source: Path) -> AsyncIterator[BufferedPayload]:
    """Snapshot a local file into a temporary file, computing its digest on the way."""
    path = await asyncio.to_thread(_new_temp_file)
    try:
        sha256, size = await asyncio.to_thread(_copy_through_digest, source, path)
        yield BufferedPayload(path=path, sha256=sha256, size=size)
    finally:
        await asyncio.to_thread(path.unlink, True)


@contextlib.asynccontextmanager
async def buffered_bytes(content: bytes) -> AsyncIterator[BufferedPayload]:
    """Hold in-memory content in a temporary file so it can be streamed like any payload."""
    path = await asyncio.to_thread(_new_temp_file)
    try:
        await asyncio.to_thread(path.write_bytes, content)
        yield BufferedPayload(path=path, sha256=hash_bytes(content), size=len(content))
    finally:
        await asyncio.to_thread(path.unlink, True)


async def upload_payload(
    blobs: BlobStore,
    location: ShelfLocation,
    grouping_id: int,
    name: str,
    payload: BufferedPayload,
) -> Blob:
    return await blobs.upload_blob(
        location.owner,
        location.repo,
        grouping_id,
        name,
        file_chunks(payload.path),
        payload.size,
        content_type_for(name),
    )


async def locate_blob(blobs: BlobStore, record: ItemRecord) -> Blob:
    """Resolve the release and asset a record points at, raising NotFoundError if either is gone."""
    source = record.source
    grouping = await blobs.get_grouping(source.owner, source.repo, source.release)
    blob = await blobs.find_blob(source.owner, source.repo, grouping.id, source.asset)
    if blob is None:
        msg = f"asset {source.asset} not found in {source.owner}/{source.repo}@{source.release}"
        raise NotFoundError(msg)
    return blob


async def delete_blob_best_effort(blobs: BlobStore, owner: str, repo: str, blob: Blob) -> bool:
    """Delete a blob, logging instead of raising on failure."""
    try:
        await blobs.delete_blob(owner, repo, blob.id)
    except ShelfError as exc:
        logger.warning("Could not delete %s from %s/%s, left in place: %s", blob.name, owner, repo, exc)
        return False
    return True


def invalidate_cache(library: Library, key: CacheKey) -> None:
    if library.cache is None:
        return
    try:
        library.cache.remove(key)
    except OSError as exc:
        logger.warning("Could not remove cached copy of %s: %s", key.item_id, exc)


async def refresh_summary(
    library: Library,
    location: ShelfLocation,
    *,
    item_count: int,
    added: Iterable[ItemRecord] = (),
    removed: Iterable[str] = (),
    message: str = "Update README",
) -> None:
    """Update a shelf README. Failures are logged and otherwise ignored."""
    if not library.update_summaries:
        return
    updater = SummaryUpdater(library.files, location.owner, location.repo)
    try:
        await updater.apply(item_count=item_count, added=added, removed=removed, message=message)
    except (ShelfError, OSError, UnicodeDecodeError) as exc:
        logger.warning("README update for %s failed: %s", location.label, exc)
