"""Shared test fixtures for shelfsync."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING

import pytest

from shelfsync.exceptions import ConflictError, NotFoundError, TransientIOError
from shelfsync.filesystem.cache_store import CacheStore
from shelfsync.filesystem.catalog_codec import marshal_catalog, parse_catalog
from shelfsync.filesystem.ledger import MigrationLedger
from shelfsync.github.base import DEFAULT_CONTENT_TYPE, Blob, Grouping, RepoFile
from shelfsync.schemas.item import Checksum, ItemRecord, Meta, Source
from shelfsync.services.checksum_service import hash_bytes
from shelfsync.services.transfer_service import Library, ShelfLocation

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

OWNER = "reader"
README_TEMPLATE = (
    "# Shelf\n\n## Quick Stats\n\n- **Items**: 0\n- **Last Updated**: 2026-01-01\n\n"
    "## About\n\nPersonal library.\n"
)


class FakeGitHub:
    """In-memory releases, assets and repository files with failure injection.

    Names listed in the ``fail_*`` sets make the matching call raise
    TransientIOError, the way a dropped connection would.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.releases: dict[tuple[str, str, str], Grouping] = {}
        self.assets: dict[int, dict[str, Blob]] = {}
        self.blob_data: dict[int, bytes] = {}
        self.files: dict[tuple[str, str], dict[str, bytes]] = {}
        self.commits: list[tuple[str, str, str, str]] = []

        self.fail_upload: set[str] = set()
        self.fail_delete: set[str] = set()
        self.fail_commit: set[str] = set()
        self.fail_download: set[str] = set()
        self.truncate_download: set[str] = set()

    # BlobStore

    async def get_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        try:
            return self.releases[(owner, repo, tag)]
        except KeyError:
            msg = f"release {tag} not found in {owner}/{repo}"
            raise NotFoundError(msg) from None

    async def get_or_create_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        key = (owner, repo, tag)
        if key not in self.releases:
            grouping = Grouping(id=next(self._ids), tag=tag, name=tag)
            self.releases[key] = grouping
            self.assets[grouping.id] = {}
        return self.releases[key]

    async def list_blobs(self, owner: str, repo: str, grouping_id: int) -> list[Blob]:
        return list(self.assets.get(grouping_id, {}).values())

    async def find_blob(self, owner: str, repo: str, grouping_id: int, name: str) -> Blob | None:
        return self.assets.get(grouping_id, {}).get(name)

    async def upload_blob(
        self,
        owner: str,
        repo: str,
        grouping_id: int,
        name: str,
        stream: AsyncIterable[bytes],
        size: int,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> Blob:
        if name in self.fail_upload:
            msg = f"upload of {name} interrupted"
            raise TransientIOError(msg)
        if name in self.assets[grouping_id]:
            msg = f"{name} already_exists"
            raise ConflictError(msg)
        data = b"".join([chunk async for chunk in stream])
        if len(data) != size:
            msg = f"declared {size} bytes, sent {len(data)}"
            raise TransientIOError(msg)
        blob = Blob(id=next(self._ids), name=name, size=size, content_type=content_type)
        self.assets[grouping_id][name] = blob
        self.blob_data[blob.id] = data
        return blob

    async def download_blob(self, owner: str, repo: str, blob_id: int) -> AsyncIterator[bytes]:
        blob = self._blob_by_id(blob_id)
        if blob.name in self.fail_download:
            msg = f"download of {blob.name} interrupted"
            raise TransientIOError(msg)
        data = self.blob_data[blob_id]
        if blob.name in self.truncate_download:
            data = data[: len(data) // 2]
        for start in range(0, len(data), 1000):
            yield data[start : start + 1000]

    async def delete_blob(self, owner: str, repo: str, blob_id: int) -> None:
        blob = self._blob_by_id(blob_id)
        if blob.name in self.fail_delete:
            msg = f"delete of {blob.name} failed"
            raise TransientIOError(msg)
        for assets in self.assets.values():
            if assets.get(blob.name) == blob:
                del assets[blob.name]
        del self.blob_data[blob_id]

    def _blob_by_id(self, blob_id: int) -> Blob:
        for assets in self.assets.values():
            for blob in assets.values():
                if blob.id == blob_id:
                    return blob
        msg = f"asset {blob_id} not found"
        raise NotFoundError(msg)

    # FileStore

    async def get_file(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> bytes | None:
        return self.files.get((owner, repo), {}).get(path)

    async def commit_file(
        self, owner: str, repo: str, path: str, content: bytes, message: str
    ) -> None:
        if path in self.fail_commit:
            msg = f"push of {path} rejected"
            raise TransientIOError(msg)
        self.files.setdefault((owner, repo), {})[path] = content
        self.commits.append((owner, repo, path, message))

    async def list_files(
        self, owner: str, repo: str, ref: str, extensions: Sequence[str] = ()
    ) -> list[RepoFile]:
        wanted = {ext.lower().lstrip(".") for ext in extensions}
        result = []
        for path, data in sorted(self.files.get((owner, repo), {}).items()):
            if wanted and path.rsplit(".", 1)[-1].lower() not in wanted:
                continue
            result.append(RepoFile(path=path, sha=hash_bytes(data)[:40], size=len(data)))
        return result

    # Helpers for tests

    def asset_bytes(self, owner: str, repo: str, tag: str, name: str) -> bytes | None:
        grouping = self.releases.get((owner, repo, tag))
        if grouping is None:
            return None
        blob = self.assets[grouping.id].get(name)
        return None if blob is None else self.blob_data[blob.id]

    def catalog(self, owner: str, repo: str, path: str = "catalog.yml") -> list[ItemRecord]:
        return parse_catalog(self.files.get((owner, repo), {}).get(path))

    def commit_count(self, owner: str, repo: str, path: str = "catalog.yml") -> int:
        return sum(1 for c in self.commits if (c[0], c[1], c[2]) == (owner, repo, path))

    def write_file(self, owner: str, repo: str, path: str, content: bytes) -> None:
        self.files.setdefault((owner, repo), {})[path] = content

    def add_asset(
        self, location: ShelfLocation, name: str, content: bytes, *, release: str | None = None
    ) -> Blob:
        """Put an asset in a release without touching the catalog."""
        release = release or location.release
        key = (location.owner, location.repo, release)
        if key not in self.releases:
            grouping = Grouping(id=next(self._ids), tag=release, name=release)
            self.releases[key] = grouping
            self.assets[grouping.id] = {}
        grouping = self.releases[key]
        blob = Blob(
            id=next(self._ids), name=name, size=len(content), content_type="application/pdf"
        )
        self.assets[grouping.id][name] = blob
        self.blob_data[blob.id] = content
        return blob

    def drop_asset(self, location: ShelfLocation, name: str, *, release: str | None = None) -> None:
        """Remove an asset behind the catalog's back."""
        grouping = self.releases[(location.owner, location.repo, release or location.release)]
        blob = self.assets[grouping.id].pop(name)
        del self.blob_data[blob.id]

    def seed_item(
        self,
        location: ShelfLocation,
        item_id: str,
        content: bytes,
        *,
        title: str | None = None,
        tags: list[str] | None = None,
        release: str | None = None,
    ) -> ItemRecord:
        """Put an asset in place and append its record to the shelf catalog."""
        release = release or location.release
        asset = f"{item_id}.pdf"
        self.add_asset(location, asset, content, release=release)

        record = ItemRecord(
            id=item_id,
            title=title or item_id.replace("-", " ").title(),
            author="Someone",
            tags=tags or [],
            format="pdf",
            checksum=Checksum(sha256=hash_bytes(content)),
            size_bytes=len(content),
            source=Source(owner=location.owner, repo=location.repo, release=release, asset=asset),
            meta=Meta(added_at="2026-01-01T00:00:00Z"),
        )
        records = self.catalog(location.owner, location.repo, location.catalog_path)
        records.append(record)
        self.write_file(
            location.owner, location.repo, location.catalog_path, marshal_catalog(records)
        )
        return record


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def library(github: FakeGitHub, cache_store: CacheStore) -> Library:
    return Library(blobs=github, files=github, cache=cache_store)


@pytest.fixture
def ledger(tmp_path: Path) -> MigrationLedger:
    return MigrationLedger.open(tmp_path / "state" / "migrated.jsonl")


@pytest.fixture
def books() -> ShelfLocation:
    return ShelfLocation(owner=OWNER, repo="shelf-books", release="library", name="books")


@pytest.fixture
def papers() -> ShelfLocation:
    return ShelfLocation(owner=OWNER, repo="shelf-papers", release="library", name="papers")
