"""Content hashing: whole-file digests and in-flight digesting stream wrappers."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, BinaryIO

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
    from pathlib import Path

CHUNK_SIZE = 64 * 1024


def hash_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def hash_bytes(content: bytes) -> str:
    """Compute SHA-256 hash of in-memory content."""
    return hashlib.sha256(content).hexdigest()


class ChecksumReader:
    """Readable wrapper that accumulates SHA-256 and byte count of everything read.

    Only ``read`` is intercepted; wrap the stream before anything else reads it.
    """

    def __init__(self, raw: BinaryIO) -> None:
        self._raw = raw
        self._sha = hashlib.sha256()
        self._size = 0

    def read(self, size: int = -1) -> bytes:
        data = self._raw.read(size)
        if data:
            self._sha.update(data)
            self._size += len(data)
        return data

    @property
    def sha256(self) -> str:
        return self._sha.hexdigest()

    @property
    def size(self) -> int:
        return self._size


class ChecksumStream:
    """Async-iterator counterpart of ChecksumReader for chunked network bodies."""

    def __init__(self, chunks: AsyncIterable[bytes]) -> None:
        self._chunks: AsyncIterator[bytes] = chunks.__aiter__()
        self._sha = hashlib.sha256()
        self._size = 0

    def __aiter__(self) -> ChecksumStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self._chunks.__anext__()
        self._sha.update(chunk)
        self._size += len(chunk)
        return chunk

    @property
    def sha256(self) -> str:
        return self._sha.hexdigest()

    @property
    def size(self) -> int:
        return self._size
