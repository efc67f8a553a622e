"""Append-only JSONL log of completed imports, used to resume interrupted batches."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import ValidationError

from shelfsync.schemas.ledger import LedgerEntry
from shelfsync.services.datetime_service import now_utc

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "migrated.jsonl"


def default_ledger_path() -> Path:
    """Return the well-known ledger location under the user's data directory."""
    return Path.home() / ".local" / "share" / "shelfsync" / LEDGER_FILENAME


def repo_file_locator(owner: str, repo: str, path: str) -> str:
    """Locator for a file migrated out of a plain repository."""
    return f"{owner}/{repo}:{path}"


def release_asset_locator(owner: str, repo: str, release: str, asset: str) -> str:
    """Locator for a payload imported from another shelf's release."""
    return f"{owner}/{repo}@{release}:{asset}"


class MigrationLedger:
    """One JSON object per line; membership is keyed by the source locator."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def open(cls, path: Path) -> MigrationLedger:
        """Prepare the ledger at path. The file itself is created on first append."""
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() and not path.is_file():
            msg = f"Ledger path is not a file: {path}"
            raise IsADirectoryError(msg)
        return cls(path)

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Record a completed import, durably, and return the stamped entry."""
        stamped = entry.model_copy(update={"timestamp": now_utc()})
        line = stamped.model_dump_json().encode("utf-8") + b"\n"
        with open(self.path, "a+b") as f:
            # A torn final line must not swallow the new entry.
            if f.seek(0, os.SEEK_END) > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    line = b"\n" + line
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
        return stamped

    def entries(self) -> list[LedgerEntry]:
        """Return all readable entries in append order."""
        try:
            lines = self.path.read_bytes().splitlines()
        except FileNotFoundError:
            return []

        result: list[LedgerEntry] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                result.append(LedgerEntry.model_validate_json(line.decode("utf-8")))
            except (UnicodeDecodeError, ValidationError):
                logger.warning("Skipping unreadable ledger line %d in %s", lineno, self.path)
        return result

    def contains(self, source: str) -> bool:
        return any(entry.source == source for entry in self.entries())

    def sources(self) -> set[str]:
        return {entry.source for entry in self.entries()}


def open_ledger(path: Path | None = None) -> MigrationLedger | None:
    """Open the ledger, or return None if it is unavailable.

    Imports still run without a ledger; they just cannot skip work done by an
    earlier interrupted run except through digest deduplication.
    """
    target = path if path is not None else default_ledger_path()
    try:
        return MigrationLedger.open(target)
    except OSError as exc:
        logger.warning("Migration ledger unavailable at %s, resume disabled: %s", target, exc)
        return None
