"""Remote store protocols and the data classes they exchange.

Implementations raise the engine's exception types: ``NotFoundError`` for an
absent resource, ``ConflictError`` for a name clash, ``AuthError`` for rejected
credentials and ``TransientIOError`` for everything else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Sequence

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class Grouping:
    """A release: a named bucket of assets in a repository."""

    id: int
    tag: str
    name: str = ""


@dataclass(frozen=True)
class Blob:
    """A release asset."""

    id: int
    name: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class RepoFile:
    """A file found while listing a repository tree."""

    path: str
    sha: str
    size: int


@runtime_checkable
class BlobStore(Protocol):
    """Release and asset operations."""

    async def get_or_create_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        """Return the release for tag, creating it if needed. Idempotent."""
        ...

    async def get_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        """Return the release for tag, raising NotFoundError if it does not exist."""
        ...

    async def list_blobs(self, owner: str, repo: str, grouping_id: int) -> list[Blob]:
        """Return every asset in the release."""
        ...

    async def find_blob(
        self, owner: str, repo: str, grouping_id: int, name: str
    ) -> Blob | None:
        """Return the asset with that name in the release, or None."""
        ...

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
        """Upload a new asset. An existing asset with that name is a ConflictError."""
        ...

    def download_blob(self, owner: str, repo: str, blob_id: int) -> AsyncIterator[bytes]:
        """Stream an asset's bytes."""
        ...

    async def delete_blob(self, owner: str, repo: str, blob_id: int) -> None:
        ...


@runtime_checkable
class FileStore(Protocol):
    """Repository file operations used for the catalog and summary documents."""

    async def get_file(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> bytes | None:
        """Return file contents, or None if the file does not exist."""
        ...

    async def commit_file(
        self, owner: str, repo: str, path: str, content: bytes, message: str
    ) -> None:
        """Create or replace a file on the default branch in one commit."""
        ...

    async def list_files(
        self, owner: str, repo: str, ref: str, extensions: Sequence[str] = ()
    ) -> list[RepoFile]:
        """List all files under ref, optionally filtered by extension."""
        ...
