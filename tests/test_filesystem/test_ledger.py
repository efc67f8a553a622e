"""Tests for the migration ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shelfsync.filesystem.ledger import (
    MigrationLedger,
    open_ledger,
    release_asset_locator,
    repo_file_locator,
)
from shelfsync.schemas.ledger import LedgerEntry

if TYPE_CHECKING:
    from pathlib import Path


class TestLocators:
    def test_repo_file_locator(self) -> None:
        assert repo_file_locator("reader", "papers", "ml/a.pdf") == "reader/papers:ml/a.pdf"

    def test_release_asset_locator(self) -> None:
        assert release_asset_locator("reader", "shelf", "library", "a.pdf") == "reader/shelf@library:a.pdf"


class TestMigrationLedger:
    def test_open_creates_parent_but_not_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "migrated.jsonl"
        ledger = MigrationLedger.open(path)
        assert path.parent.is_dir()
        assert not path.exists()
        assert ledger.entries() == []

    def test_open_rejects_directory(self, tmp_path: Path) -> None:
        (tmp_path / "migrated.jsonl").mkdir()
        with pytest.raises(IsADirectoryError):
            MigrationLedger.open(tmp_path / "migrated.jsonl")

    def test_append_stamps_and_persists(self, ledger: MigrationLedger) -> None:
        stamped = ledger.append(LedgerEntry(source="o/r:a.pdf", item_id="a-doc", shelf="books"))
        assert stamped.timestamp is not None
        assert ledger.path.read_text().count("\n") == 1
        assert ledger.contains("o/r:a.pdf")
        assert not ledger.contains("o/r:b.pdf")

    def test_entries_in_append_order(self, ledger: MigrationLedger) -> None:
        for name in ("a", "b", "c"):
            ledger.append(LedgerEntry(source=f"o/r:{name}.pdf", item_id=f"{name}-doc", shelf="books"))
        assert [entry.item_id for entry in ledger.entries()] == ["a-doc", "b-doc", "c-doc"]
        assert ledger.sources() == {"o/r:a.pdf", "o/r:b.pdf", "o/r:c.pdf"}

    def test_reopen_sees_previous_entries(self, tmp_path: Path) -> None:
        path = tmp_path / "migrated.jsonl"
        MigrationLedger.open(path).append(LedgerEntry(source="o/r:a.pdf", item_id="a-doc", shelf="s"))
        assert MigrationLedger.open(path).contains("o/r:a.pdf")

    def test_unreadable_lines_skipped(
        self, ledger: MigrationLedger, caplog: pytest.LogCaptureFixture
    ) -> None:
        ledger.append(LedgerEntry(source="o/r:a.pdf", item_id="a-doc", shelf="s"))
        with open(ledger.path, "a", encoding="utf-8") as f:
            f.write('{"source": "o/r:b.pd\n\n')
        ledger.append(LedgerEntry(source="o/r:c.pdf", item_id="c-doc", shelf="s"))
        assert ledger.sources() == {"o/r:a.pdf", "o/r:c.pdf"}
        assert "unreadable ledger line 2" in caplog.text

    def test_torn_multibyte_line_skipped(
        self, ledger: MigrationLedger, caplog: pytest.LogCaptureFixture
    ) -> None:
        ledger.append(LedgerEntry(source="o/r:caf\u00e9.pdf", item_id="cafe-doc", shelf="s"))
        with open(ledger.path, "ab") as f:
            f.write(b'{"source":"o/r:caf\xc3\n')
        ledger.append(LedgerEntry(source="o/r:c.pdf", item_id="c-doc", shelf="s"))
        assert ledger.sources() == {"o/r:caf\u00e9.pdf", "o/r:c.pdf"}
        assert "unreadable ledger line 2" in caplog.text

    def test_entry_keeps_destination_release(self, ledger: MigrationLedger) -> None:
        ledger.append(LedgerEntry(source="o/r:a.pdf", item_id="a-doc", shelf="s", release="v2"))
        [entry] = ledger.entries()
        assert entry.release == "v2"


class TestOpenLedger:
    def test_returns_ledger(self, tmp_path: Path) -> None:
        ledger = open_ledger(tmp_path / "migrated.jsonl")
        assert ledger is not None

    def test_unavailable_returns_none(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        assert open_ledger(blocker / "migrated.jsonl") is None
