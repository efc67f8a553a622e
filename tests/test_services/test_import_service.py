"""Tests for shelf imports and repository migrations."""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING

import pytest

from shelfsync.exceptions import ConflictError, OperationError
from shelfsync.filesystem.toml_manager import MigrationSource
from shelfsync.services.checksum_service import hash_bytes
from shelfsync.services.import_service import (
    RepoRef,
    find_route,
    import_shelf,
    migrate_one,
    migrate_repo,
    route_source,
)
from shelfsync.services.progress import BatchPhase, EventKind, ProgressStream
from tests.conftest import OWNER, FakeGitHub

if TYPE_CHECKING:
    from shelfsync.filesystem.ledger import MigrationLedger
    from shelfsync.services.transfer_service import Library, ShelfLocation

ORIGIN = RepoRef(owner=OWNER, repo="old-docs")


def _seed_three(github: FakeGitHub, books: ShelfLocation) -> None:
    for name in ("one-doc", "two-doc", "three-doc"):
        github.seed_item(books, name, f"content of {name}".encode())


class TestRouting:
    SOURCE = MigrationSource(
        owner=OWNER,
        repo="old-docs",
        mapping={"books/": "books", "books/papers/": "papers", "misc/": "misc"},
    )

    def test_longest_prefix_wins(self) -> None:
        assert route_source("books/papers/a.pdf", self.SOURCE) == "papers"
        assert route_source("books/b.pdf", self.SOURCE) == "books"

    def test_no_route(self) -> None:
        assert route_source("photos/x.jpg", self.SOURCE) is None

    def test_find_route_first_source(self) -> None:
        other = MigrationSource(owner=OWNER, repo="other", mapping={"photos/": "photos"})
        assert find_route("photos/x.jpg", [self.SOURCE, other]) == (other, "photos")
        assert find_route("nowhere/x", [self.SOURCE, other]) is None

    def test_repo_ref_from_source(self) -> None:
        source = MigrationSource(owner=OWNER, repo="old-docs", ref="master")
        assert RepoRef.from_source(source) == RepoRef(OWNER, "old-docs", "master")


class TestImportShelf:
    async def test_partial_failure_then_resume(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        papers: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        _seed_three(github, books)
        github.fail_upload.add("two-doc.pdf")

        result = await import_shelf(library, books, papers, ledger=ledger)

        assert (result.success_count, result.fail_count) == (2, 1)
        assert result.failures[0].item_id == "two-doc"
        assert result.failures[0].step == "upload"
        assert [e.item_id for e in ledger.entries()] == ["one-doc", "three-doc"]
        imported = github.catalog(OWNER, papers.repo)
        assert [r.id for r in imported] == ["one-doc", "three-doc"]
        assert imported[0].meta.migrated_from == f"{OWNER}/{books.repo}@library:one-doc.pdf"
        assert github.commit_count(OWNER, papers.repo) == 1
        # The source shelf is untouched.
        assert len(github.catalog(OWNER, books.repo)) == 3
        assert github.asset_bytes(OWNER, books.repo, "library", "one-doc.pdf") is not None

        github.fail_upload.clear()
        rerun = await import_shelf(library, books, papers, ledger=ledger)

        assert (rerun.success_count, rerun.fail_count, rerun.skipped_count) == (1, 0, 2)
        ids = [r.id for r in github.catalog(OWNER, papers.repo)]
        assert ids == ["one-doc", "three-doc", "two-doc"]
        assert len(ledger.entries()) == 3

    async def test_torn_ledger_does_not_abort(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        papers: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        github.seed_item(books, "sicp", b"wizard book")
        ledger.path.write_bytes(b'{"source":"o/r:caf\xc3')

        result = await import_shelf(library, books, papers, ledger=ledger)

        assert (result.success_count, result.fail_count) == (1, 0)
        [entry] = ledger.entries()
        assert (entry.item_id, entry.shelf, entry.release) == ("sicp", "papers", "library")

    async def test_duplicate_digest_skipped_without_ledger(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, papers: ShelfLocation
    ) -> None:
        github.seed_item(books, "sicp", b"same bytes")
        github.seed_item(papers, "sicp-copy", b"same bytes")
        result = await import_shelf(library, books, papers)
        assert result.skipped == ("sicp",)
        assert github.commit_count(OWNER, papers.repo) == 0

    async def test_id_collision_is_conflict(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, papers: ShelfLocation
    ) -> None:
        github.seed_item(books, "sicp", b"first edition")
        github.seed_item(papers, "sicp", b"second edition")
        result = await import_shelf(library, books, papers)
        assert result.fail_count == 1
        assert "already used" in result.failures[0].message

    async def test_pick_and_limit(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, papers: ShelfLocation
    ) -> None:
        _seed_three(github, books)
        result = await import_shelf(
            library, books, papers, pick=lambda records: list(reversed(records)), limit=2
        )
        assert [r.id for r in result.records] == ["three-doc", "two-doc"]

    async def test_commit_failure_turns_successes_into_failures(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        papers: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        _seed_three(github, books)
        dst = dataclasses.replace(papers, catalog_path="data/papers.yml")
        github.fail_commit.add("data/papers.yml")
        result = await import_shelf(library, books, dst, ledger=ledger)
        assert result.success_count == 0
        assert result.fail_count == 3
        assert {f.step for f in result.failures} == {"commit-destination"}

    async def test_into_itself_rejected(
        self, library: Library, github: FakeGitHub, books: ShelfLocation
    ) -> None:
        with pytest.raises(ConflictError):
            await import_shelf(library, books, books.with_release("other"))

    async def test_cancel(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, papers: ShelfLocation
    ) -> None:
        _seed_three(github, books)
        cancel = asyncio.Event()
        cancel.set()
        result = await import_shelf(library, books, papers, cancel=cancel)
        assert result.cancelled
        assert github.catalog(OWNER, papers.repo) == []

    async def test_phases_in_order(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, papers: ShelfLocation
    ) -> None:
        _seed_three(github, books)
        progress = ProgressStream(maxsize=256)
        await import_shelf(library, books, papers, progress=progress)
        progress.finish()
        phases = [e.message async for e in progress.events() if e.kind is EventKind.PHASE]
        assert phases == [
            "reading books",
            "reading papers",
            BatchPhase.PICKING.value,
            "3 items",
            "committing 3 records",
            "3 succeeded, 0 failed",
        ]


class TestMigrateRepo:
    async def test_migrates_and_dedupes(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        github.write_file(OWNER, "old-docs", "books/Deep Learning.pdf", b"dl")
        github.write_file(OWNER, "old-docs", "books/copy of dl.pdf", b"dl")
        github.write_file(OWNER, "old-docs", "books/notes.txt", b"notes")

        result = await migrate_repo(library, ORIGIN, books, extensions=["pdf"], ledger=ledger)

        assert (result.success_count, result.skipped_count) == (1, 1)
        (record,) = github.catalog(OWNER, books.repo)
        assert record.id == "deep-learning"
        assert record.title == "Deep Learning"
        assert record.format == "pdf"
        assert record.sha256 == hash_bytes(b"dl")
        assert record.meta.migrated_from == f"{OWNER}/old-docs:books/Deep Learning.pdf"
        assert github.asset_bytes(OWNER, books.repo, "library", "deep-learning.pdf") == b"dl"
        assert ledger.sources() == {f"{OWNER}/old-docs:books/Deep Learning.pdf"}

    async def test_paths_restrict_batch_and_ledger_skips(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        github.write_file(OWNER, "old-docs", "a.pdf", b"aaa")
        github.write_file(OWNER, "old-docs", "b.pdf", b"bbb")

        first = await migrate_repo(library, ORIGIN, books, paths=["a.pdf"], ledger=ledger)
        assert [r.id for r in first.records] == ["a-item"]

        second = await migrate_repo(library, ORIGIN, books, ledger=ledger)
        assert second.skipped == ("a.pdf",)
        assert [r.id for r in second.records] == ["b-item"]

    async def test_upload_failure_counted(
        self,
        library: Library,
        github: FakeGitHub,
        books: ShelfLocation,
        ledger: MigrationLedger,
    ) -> None:
        github.write_file(OWNER, "old-docs", "alpha.pdf", b"alpha")
        github.write_file(OWNER, "old-docs", "beta.pdf", b"beta")
        github.fail_upload.add("alpha.pdf")
        result = await migrate_repo(library, ORIGIN, books, ledger=ledger)
        assert (result.success_count, result.fail_count) == (1, 1)
        assert result.failures[0].item_id == "alpha"
        assert not ledger.contains(f"{OWNER}/old-docs:alpha.pdf")


class TestMigrateOne:
    async def test_commits_immediately(
        self, library: Library, github: FakeGitHub, books: ShelfLocation, ledger: MigrationLedger
    ) -> None:
        github.write_file(OWNER, "old-docs", "papers/attention.pdf", b"transformer")
        record = await migrate_one(library, ORIGIN, "papers/attention.pdf", books, ledger=ledger)
        assert record is not None
        assert github.catalog(OWNER, books.repo) == [record]
        assert ledger.contains(f"{OWNER}/old-docs:papers/attention.pdf")

        again = await migrate_one(library, ORIGIN, "papers/attention.pdf", books, ledger=ledger)
        assert again is None

    async def test_missing_file(
        self, library: Library, github: FakeGitHub, books: ShelfLocation
    ) -> None:
        with pytest.raises(OperationError) as exc_info:
            await migrate_one(library, ORIGIN, "gone.pdf", books)
        assert exc_info.value.step == "download"

    async def test_id_collision(
        self, library: Library, github: FakeGitHub, books: ShelfLocation
    ) -> None:
        github.seed_item(books, "attention", b"older upload")
        github.write_file(OWNER, "old-docs", "attention.pdf", b"newer bytes")
        with pytest.raises(OperationError) as exc_info:
            await migrate_one(library, ORIGIN, "attention.pdf", books)
        assert isinstance(exc_info.value.cause, ConflictError)
