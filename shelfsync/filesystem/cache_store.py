"""Local payload cache: content-keyed file mirror with divergence detection.

Layout::

    <root>/<owner>/<repo>/<item_id>/<blob_name>
    <root>/<owner>/<repo>/<item_id>/<blob_name>.meta.json

The sidecar records the digest computed when the file was written.  Comparing
it with the catalog checksum answers "does the catalog still describe what we
cached?", and comparing it with the file's current digest answers "was the
cached copy edited locally?".
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from shelfsync.services.checksum_service import CHUNK_SIZE, ChecksumReader, hash_file
from shelfsync.services.datetime_service import format_rfc3339, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".meta.json"
TMP_SUFFIX = ".tmp"


@dataclass(frozen=True)
class CacheKey:
    """Identifies one cached payload."""

    owner: str
    repo: str
    item_id: str
    blob_name: str

    def __post_init__(self) -> None:
        for part in (self.owner, self.repo, self.item_id, self.blob_name):
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                msg = f"Invalid cache key component: {part!r}"
                raise ValueError(msg)


@dataclass(frozen=True)
class CachedFile:
    """Result of storing a payload in the cache."""

    path: Path
    sha256: str
    size: int


@dataclass(frozen=True)
class CacheEntryInfo:
    """A cached payload discovered on disk."""

    key: CacheKey
    path: Path
    size: int
    recorded_sha256: str | None


class Divergence(StrEnum):
    """How a cached copy relates to the catalog's view of the payload."""

    NOT_CACHED = "not_cached"
    NONE = "none"
    LOCAL_EDIT = "local_edit"
    REMOTE_CHANGED = "remote_changed"
    BOTH = "both"


class CacheStore:
    """Manages cached payload files under a process-owned root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path(self, key: CacheKey) -> Path:
        """Return the cache path for key. Pure, no filesystem access."""
        return self.root / key.owner / key.repo / key.item_id / key.blob_name

    def _sidecar(self, key: CacheKey) -> Path:
        path = self.path(key)
        return path.with_name(path.name + SIDECAR_SUFFIX)

    def exists(self, key: CacheKey) -> bool:
        return self.path(key).is_file()

    def store(
        self,
        key: CacheKey,
        stream: BinaryIO,
        expected_sha256: str | None = None,
    ) -> CachedFile:
        """Write stream to the cache, replacing any previous copy.

        The digest is computed while writing and recorded in the sidecar.  A
        mismatch with expected_sha256 is logged but not raised; the caller
        decides whether that is fatal.
        """
        dest = self.path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + TMP_SUFFIX)

        reader = ChecksumReader(stream)
        try:
            with open(tmp, "wb") as out:
                for chunk in iter(lambda: reader.read(CHUNK_SIZE), b""):
                    out.write(chunk)
                out.flush()
                os.fsync(out.fileno())
            # A stale sidecar next to new content would read as a local edit.
            self._sidecar(key).unlink(missing_ok=True)
            os.replace(tmp, dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        if expected_sha256 and reader.sha256 != expected_sha256:
            logger.warning(
                "Cached %s/%s/%s with digest %s, catalog expects %s",
                key.repo,
                key.item_id,
                key.blob_name,
                reader.sha256,
                expected_sha256,
            )

        self._write_sidecar(key, reader.sha256, reader.size)
        return CachedFile(path=dest, sha256=reader.sha256, size=reader.size)

    def store_file(self, key: CacheKey, source: Path) -> CachedFile:
        """Copy a local file into the cache."""
        with open(source, "rb") as f:
            return self.store(key, f)

    def _write_sidecar(self, key: CacheKey, sha256: str, size: int) -> None:
        sidecar = self._sidecar(key)
        payload = {"sha256": sha256, "size": size, "stored_at": format_rfc3339(now_utc())}
        tmp = sidecar.with_name(sidecar.name + TMP_SUFFIX)
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, sidecar)

    def mark_synced(self, key: CacheKey, sha256: str, size: int) -> None:
        """Record that the cached copy is now the authoritative remote version."""
        if not self.exists(key):
            msg = f"No cached copy for {key.item_id}"
            raise FileNotFoundError(msg)
        self._write_sidecar(key, sha256, size)

    def recorded_digest(self, key: CacheKey) -> str | None:
        """Return the digest recorded when the entry was written, if known."""
        sidecar = self._sidecar(key)
        try:
            data = json.loads(sidecar.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable cache metadata %s: %s", sidecar, exc)
            return None
        digest = data.get("sha256") if isinstance(data, dict) else None
        return digest if isinstance(digest, str) and digest else None

    def current_digest(self, key: CacheKey) -> str | None:
        """Hash the cached file as it is on disk now."""
        path = self.path(key)
        if not path.is_file():
            return None
        return hash_file(path)

    def divergence(self, key: CacheKey, catalog_sha256: str) -> Divergence:
        """Classify how the cached copy differs from the catalog.

        Without a sidecar there is no record of what was stored, so any
        difference is reported as a local edit.  An empty catalog digest is
        unknown, not different: only the file is checked against its sidecar.
        """
        current = self.current_digest(key)
        if current is None:
            return Divergence.NOT_CACHED

        recorded = self.recorded_digest(key)
        if recorded is None:
            if not catalog_sha256 or current == catalog_sha256:
                return Divergence.NONE
            return Divergence.LOCAL_EDIT

        local_edit = current != recorded
        remote_changed = bool(catalog_sha256) and recorded != catalog_sha256
        if local_edit and remote_changed:
            return Divergence.BOTH
        if local_edit:
            return Divergence.LOCAL_EDIT
        if remote_changed:
            return Divergence.REMOTE_CHANGED
        return Divergence.NONE

    def has_been_modified(self, key: CacheKey, catalog_sha256: str) -> bool:
        """Return True if a cached copy exists and no longer matches the catalog."""
        return self.divergence(key, catalog_sha256) not in (Divergence.NOT_CACHED, Divergence.NONE)

    def remove(self, key: CacheKey) -> None:
        """Delete the cached copy and its sidecar. Absent entries are not an error."""
        path = self.path(key)
        sidecar = self._sidecar(key)
        for target in (
            path,
            sidecar,
            path.with_name(path.name + TMP_SUFFIX),
            sidecar.with_name(sidecar.name + TMP_SUFFIX),
        ):
            target.unlink(missing_ok=True)
        self._prune_empty_dirs(path.parent)

    def _prune_empty_dirs(self, directory: Path) -> None:
        root = self.root.resolve()
        current = directory
        while current.exists() and current.resolve() != root:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    def iter_entries(self) -> Iterator[CacheEntryInfo]:
        """Yield every cached payload under the root."""
        if not self.root.is_dir():
            return
        for path in sorted(self.root.glob("*/*/*/*")):
            if not path.is_file() or path.name.endswith((SIDECAR_SUFFIX, TMP_SUFFIX)):
                continue
            owner, repo, item_id = path.relative_to(self.root).parts[:3]
            key = CacheKey(owner=owner, repo=repo, item_id=item_id, blob_name=path.name)
            yield CacheEntryInfo(
                key=key,
                path=path,
                size=path.stat().st_size,
                recorded_sha256=self.recorded_digest(key),
            )

    def entries(self) -> list[CacheEntryInfo]:
        return list(self.iter_entries())

    def total_size(self) -> int:
        return sum(entry.size for entry in self.iter_entries())

    def clear_all(self) -> None:
        """Remove the whole cache directory."""
        if self.root.exists():
            shutil.rmtree(self.root)
