"""Tests for the remote catalog store."""

from __future__ import annotations

import pytest

from shelfsync.exceptions import CatalogFormatError, CatalogNotFoundError, TransientIOError
from shelfsync.schemas.item import ItemRecord, Source
from shelfsync.services.catalog_service import CatalogStore
from tests.conftest import OWNER, FakeGitHub

REPO = "shelf-books"


def _record(item_id: str, title: str = "") -> ItemRecord:
    return ItemRecord(
        id=item_id,
        title=title or item_id,
        source=Source(owner=OWNER, repo=REPO, release="library", asset=f"{item_id}.pdf"),
    )


@pytest.fixture
def catalog(github: FakeGitHub) -> CatalogStore:
    return CatalogStore(github, OWNER, REPO)


class TestLoad:
    async def test_missing_catalog(self, catalog: CatalogStore) -> None:
        with pytest.raises(CatalogNotFoundError):
            await catalog.load()
        assert await catalog.load_or_empty() == []

    async def test_malformed_catalog(self, github: FakeGitHub, catalog: CatalogStore) -> None:
        github.write_file(OWNER, REPO, "catalog.yml", b"just: a mapping\n")
        with pytest.raises(CatalogFormatError):
            await catalog.load()
        with pytest.raises(CatalogFormatError):
            await catalog.load_or_empty()

    async def test_custom_path(self, github: FakeGitHub) -> None:
        store = CatalogStore(github, OWNER, REPO, "data/items.yml")
        await store.append(_record("one-doc"), "Add")
        assert [r.id for r in github.catalog(OWNER, REPO, "data/items.yml")] == ["one-doc"]


class TestMutations:
    async def test_append_creates_catalog(self, github: FakeGitHub, catalog: CatalogStore) -> None:
        records = await catalog.append(_record("one-doc"), "Add one-doc")
        assert [r.id for r in records] == ["one-doc"]
        assert github.commits == [(OWNER, REPO, "catalog.yml", "Add one-doc")]

    async def test_append_upserts(
        self, github: FakeGitHub, catalog: CatalogStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        await catalog.append(_record("one-doc", "First"), "Add")
        await catalog.append(_record("one-doc", "Second"), "Add again")
        (record,) = github.catalog(OWNER, REPO)
        assert record.title == "Second"
        assert "Replacing existing record" in caplog.text

    async def test_append_many_is_one_commit(self, github: FakeGitHub, catalog: CatalogStore) -> None:
        await catalog.append_many([_record("one-doc"), _record("two-doc")], "Import")
        assert github.commit_count(OWNER, REPO) == 1
        assert [r.id for r in github.catalog(OWNER, REPO)] == ["one-doc", "two-doc"]

    async def test_remove(self, github: FakeGitHub, catalog: CatalogStore) -> None:
        await catalog.append_many([_record("one-doc"), _record("two-doc")], "Import")
        records, found = await catalog.remove("one-doc", "Remove")
        assert found
        assert [r.id for r in records] == ["two-doc"]
        assert [r.id for r in github.catalog(OWNER, REPO)] == ["two-doc"]

    async def test_remove_missing_does_not_commit(
        self, github: FakeGitHub, catalog: CatalogStore
    ) -> None:
        await catalog.append(_record("one-doc"), "Add")
        _, found = await catalog.remove("nope", "Remove")
        assert not found
        assert github.commit_count(OWNER, REPO) == 1

    async def test_update(self, catalog: CatalogStore) -> None:
        await catalog.append_many([_record("one-doc"), _record("two-doc")], "Import")
        saved = await catalog.update(lambda records: list(reversed(records)), "Reorder")
        assert [r.id for r in saved] == ["two-doc", "one-doc"]
        assert await catalog.find("two-doc") is not None
        assert await catalog.find("three-doc") is None

    async def test_commit_failure_propagates(self, github: FakeGitHub, catalog: CatalogStore) -> None:
        github.fail_commit.add("catalog.yml")
        with pytest.raises(TransientIOError):
            await catalog.append(_record("one-doc"), "Add")
        assert github.catalog(OWNER, REPO) == []
