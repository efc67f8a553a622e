"""Remote catalog store: load, mutate in memory, commit the full document."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from shelfsync.exceptions import CatalogNotFoundError
from shelfsync.filesystem.catalog_codec import (
    DEFAULT_CATALOG_PATH,
    append_record,
    find_record,
    marshal_catalog,
    parse_catalog,
    remove_record,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from shelfsync.github.base import FileStore
    from shelfsync.schemas.item import ItemRecord

logger = logging.getLogger(__name__)


class CatalogStore:
    """The catalog document of one shelf repository.

    There is no locking.  Every mutating helper loads immediately before the
    change and saves immediately after; a concurrent writer's full document can
    still win.
    """

    def __init__(
        self,
        files: FileStore,
        owner: str,
        repo: str,
        path: str = DEFAULT_CATALOG_PATH,
    ) -> None:
        self.files = files
        self.owner = owner
        self.repo = repo
        self.path = path

    def __repr__(self) -> str:
        return f"CatalogStore({self.owner}/{self.repo}:{self.path})"

    async def load(self) -> list[ItemRecord]:
        """Fetch and parse the catalog.

        Raises CatalogNotFoundError when the document does not exist and
        CatalogFormatError when it cannot be parsed.
        """
        data = await self.files.get_file(self.owner, self.repo, self.path)
        if data is None:
            msg = f"No catalog at {self.owner}/{self.repo}:{self.path}"
            raise CatalogNotFoundError(msg)
        return parse_catalog(data)

    async def load_or_empty(self) -> list[ItemRecord]:
        """Like load, but a missing catalog is an empty one."""
        try:
            return await self.load()
        except CatalogNotFoundError:
            logger.info("No catalog yet in %s/%s, starting empty", self.owner, self.repo)
            return []

    async def save(self, records: list[ItemRecord], message: str) -> None:
        await self.files.commit_file(
            self.owner, self.repo, self.path, marshal_catalog(records), message
        )
        logger.info("Committed catalog %s/%s (%d records)", self.owner, self.repo, len(records))

    async def update(
        self,
        mutate: Callable[[list[ItemRecord]], list[ItemRecord]],
        message: str,
    ) -> list[ItemRecord]:
        """Load, apply mutate, save. Returns the saved list."""
        records = mutate(await self.load_or_empty())
        await self.save(records, message)
        return records

    async def append(self, record: ItemRecord, message: str) -> list[ItemRecord]:
        """Upsert one record by id."""
        records = await self.load_or_empty()
        if find_record(records, record.id) is not None:
            logger.warning("Replacing existing record %s in %s/%s", record.id, self.owner, self.repo)
        records = append_record(records, record)
        await self.save(records, message)
        return records

    async def append_many(self, new_records: list[ItemRecord], message: str) -> list[ItemRecord]:
        """Upsert several records in a single commit."""
        records = await self.load_or_empty()
        for record in new_records:
            records = append_record(records, record)
        await self.save(records, message)
        return records

    async def remove(self, item_id: str, message: str) -> tuple[list[ItemRecord], bool]:
        """Remove a record by id. Nothing is committed when it is absent."""
        records, found = remove_record(await self.load_or_empty(), item_id)
        if found:
            await self.save(records, message)
        return records, found

    async def find(self, item_id: str) -> ItemRecord | None:
        return find_record(await self.load_or_empty(), item_id)
