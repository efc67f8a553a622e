"""Tests for shelf README maintenance."""

from __future__ import annotations

from shelfsync.schemas.item import ItemRecord, Source
from shelfsync.services.readme_service import (
    MAX_RECENT,
    RECENT_HEADING,
    SummaryUpdater,
    add_recent,
    format_entry,
    remove_recent,
    update_stats,
)
from tests.conftest import OWNER, README_TEMPLATE, FakeGitHub


def _record(item_id: str, *, author: str = "Ann", tags: list[str] | None = None) -> ItemRecord:
    return ItemRecord(
        id=item_id,
        title=f"Title {item_id}",
        author=author,
        tags=tags or [],
        source=Source(owner=OWNER, repo="shelf", release="library", asset=f"{item_id}.pdf"),
    )


class TestFormatEntry:
    def test_with_tags(self) -> None:
        entry = format_entry(_record("sicp", tags=["lisp", "classic"]))
        assert entry == "- **Title sicp** by Ann (`sicp`) - Tags: lisp, classic"

    def test_unknown_author(self) -> None:
        assert format_entry(_record("sicp", author="")) == "- **Title sicp** by Unknown (`sicp`)"


class TestUpdateStats:
    def test_rewrites_section(self) -> None:
        text = update_stats(README_TEMPLATE, 42, date="2026-10-19")
        assert "- **Items**: 42" in text
        assert "- **Last Updated**: 2026-10-19" in text
        assert "- **Items**: 0" not in text
        assert text.endswith("## About\n\nPersonal library.\n")

    def test_without_section_unchanged(self) -> None:
        assert update_stats("# Plain\n", 3) == "# Plain\n"


class TestRecentlyAdded:
    def test_section_created_after_stats(self) -> None:
        text = add_recent(README_TEMPLATE, [_record("one-doc")])
        assert text.index("## Quick Stats") < text.index(RECENT_HEADING) < text.index("## About")
        assert "(`one-doc`)" in text

    def test_section_created_at_end_without_stats(self) -> None:
        text = add_recent("# Shelf\n\n", [_record("one-doc")])
        assert text == f"# Shelf\n\n{RECENT_HEADING}\n\n{format_entry(_record('one-doc'))}\n"

    def test_newest_first_and_deduplicated(self) -> None:
        text = add_recent(README_TEMPLATE, [_record("one-doc"), _record("two-doc")])
        text = add_recent(text, [_record("one-doc")])
        lines = [line for line in text.split("\n") if line.startswith("- **Title")]
        assert lines == [format_entry(_record("one-doc")), format_entry(_record("two-doc"))]

    def test_capped(self) -> None:
        records = [_record(f"doc-{n}") for n in range(MAX_RECENT + 5)]
        text = add_recent(README_TEMPLATE, records)
        entries = [line for line in text.split("\n") if line.startswith("- **Title")]
        assert len(entries) == MAX_RECENT
        assert "(`doc-14`)" in entries[0]

    def test_nothing_added_is_unchanged(self) -> None:
        assert add_recent(README_TEMPLATE, []) == README_TEMPLATE

    def test_remove_recent(self) -> None:
        text = add_recent(README_TEMPLATE, [_record("one-doc"), _record("two-doc")])
        text = remove_recent(text, "one-doc")
        assert "(`one-doc`)" not in text
        assert "(`two-doc`)" in text


class TestSummaryUpdater:
    async def test_missing_readme_is_skipped(self, github: FakeGitHub) -> None:
        updater = SummaryUpdater(github, OWNER, "shelf")
        assert await updater.apply(item_count=1, added=[_record("one-doc")]) is False
        assert github.commits == []

    async def test_commits_changes(self, github: FakeGitHub) -> None:
        github.write_file(OWNER, "shelf", "README.md", README_TEMPLATE.encode())
        updater = SummaryUpdater(github, OWNER, "shelf")
        assert await updater.apply(item_count=1, added=[_record("one-doc")], message="Add") is True
        text = github.files[(OWNER, "shelf")]["README.md"].decode()
        assert "- **Items**: 1" in text
        assert "(`one-doc`)" in text
        assert github.commits[-1][3] == "Add"
