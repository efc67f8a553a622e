"""TOML reader/writer for the library configuration file (shelves, migration sources)."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import tomli_w

from shelfsync.config import DEFAULT_RELEASE
from shelfsync.filesystem.catalog_codec import DEFAULT_CATALOG_PATH

if TYPE_CHECKING:
    from pathlib import Path


@dataclass
class ShelfConfig:
    """A shelf: one repository holding a catalog and its releases."""

    name: str
    repo: str
    owner: str = ""
    catalog_path: str = ""
    default_release: str = ""

    def effective_owner(self, global_owner: str) -> str:
        return self.owner or global_owner

    def effective_release(self, global_default: str = "") -> str:
        return self.default_release or global_default or DEFAULT_RELEASE

    def effective_catalog_path(self) -> str:
        return self.catalog_path or DEFAULT_CATALOG_PATH


@dataclass
class MigrationSource:
    """A plain repository whose files can be migrated onto shelves.

    ``mapping`` routes path prefixes to shelf names; the longest prefix wins.
    """

    owner: str
    repo: str
    ref: str = "main"
    mapping: dict[str, str] = field(default_factory=dict)


@dataclass
class LibraryConfig:
    """Parsed contents of the configuration file."""

    owner: str = ""
    default_release: str = DEFAULT_RELEASE
    shelves: list[ShelfConfig] = field(default_factory=list)
    migration_sources: list[MigrationSource] = field(default_factory=list)

    def shelf_by_name(self, name: str) -> ShelfConfig | None:
        for shelf in self.shelves:
            if shelf.name == name:
                return shelf
        return None


def parse_library_config(config_path: Path) -> LibraryConfig:
    """Parse the configuration file. A missing file is an empty configuration."""
    if not config_path.exists():
        return LibraryConfig()

    data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    github_data = data.get("github", {})
    defaults_data = data.get("defaults", {})

    shelves: list[ShelfConfig] = []
    seen: set[str] = set()
    for shelf_data in data.get("shelves", []):
        for key in ("name", "repo"):
            if key not in shelf_data:
                msg = f"Shelf entry missing required '{key}' field: {shelf_data}"
                raise ValueError(msg)
        if shelf_data["name"] in seen:
            msg = f"Duplicate shelf name: {shelf_data['name']}"
            raise ValueError(msg)
        seen.add(shelf_data["name"])
        shelves.append(
            ShelfConfig(
                name=shelf_data["name"],
                repo=shelf_data["repo"],
                owner=shelf_data.get("owner", ""),
                catalog_path=shelf_data.get("catalog_path", ""),
                default_release=shelf_data.get("default_release", ""),
            )
        )

    sources: list[MigrationSource] = []
    for source_data in data.get("migration", {}).get("sources", []):
        for key in ("owner", "repo"):
            if key not in source_data:
                msg = f"Migration source missing required '{key}' field: {source_data}"
                raise ValueError(msg)
        mapping: dict[str, Any] = source_data.get("mapping", {})
        sources.append(
            MigrationSource(
                owner=source_data["owner"],
                repo=source_data["repo"],
                ref=source_data.get("ref", "main"),
                mapping={str(prefix): str(shelf) for prefix, shelf in mapping.items()},
            )
        )

    return LibraryConfig(
        owner=github_data.get("owner", ""),
        default_release=defaults_data.get("release", DEFAULT_RELEASE),
        shelves=shelves,
        migration_sources=sources,
    )


def write_library_config(config_path: Path, config: LibraryConfig) -> None:
    """Write the configuration back to disk."""
    shelves_data: list[dict[str, Any]] = []
    for shelf in config.shelves:
        entry: dict[str, Any] = {"name": shelf.name, "repo": shelf.repo}
        if shelf.owner:
            entry["owner"] = shelf.owner
        if shelf.catalog_path:
            entry["catalog_path"] = shelf.catalog_path
        if shelf.default_release:
            entry["default_release"] = shelf.default_release
        shelves_data.append(entry)

    sources_data: list[dict[str, Any]] = []
    for source in config.migration_sources:
        sources_data.append(
            {
                "owner": source.owner,
                "repo": source.repo,
                "ref": source.ref,
                "mapping": dict(source.mapping),
            }
        )

    data: dict[str, Any] = {
        "github": {"owner": config.owner},
        "defaults": {"release": config.default_release},
        "shelves": shelves_data,
    }
    if sources_data:
        data["migration"] = {"sources": sources_data}

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_bytes(tomli_w.dumps(data).encode("utf-8"))
