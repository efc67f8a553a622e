"""Catalog record schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shelfsync.services.datetime_service import normalize_timestamp
from shelfsync.services.slug_service import ITEM_ID_PATTERN

SOURCE_TYPE_RELEASE = "github_release"


class Checksum(BaseModel):
    """Content hashes of the stored payload."""

    model_config = ConfigDict(extra="ignore")

    sha256: str = Field(default="", pattern=r"^([0-9a-f]{64})?$")


class Source(BaseModel):
    """Where an item's payload currently lives."""

    model_config = ConfigDict(extra="ignore")

    type: str = SOURCE_TYPE_RELEASE
    owner: str
    repo: str
    release: str
    asset: str

    def describe(self) -> str:
        return f"{self.owner}/{self.repo}@{self.release}/{self.asset}"


class Meta(BaseModel):
    """Provenance data."""

    model_config = ConfigDict(extra="ignore")

    added_at: str = ""
    migrated_from: str = ""

    @field_validator("added_at", mode="before")
    @classmethod
    def _normalize_added_at(cls, value: object) -> object:
        if value is None or value == "":
            return ""
        return normalize_timestamp(value)  # type: ignore[arg-type]


class ItemRecord(BaseModel):
    """One entry in a shelf's catalog."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(pattern=ITEM_ID_PATTERN)
    title: str = Field(min_length=1)
    author: str = ""
    year: int = 0
    tags: list[str] = Field(default_factory=list)
    format: str = ""
    checksum: Checksum = Field(default_factory=Checksum)
    size_bytes: int = Field(default=0, ge=0)
    source: Source
    meta: Meta = Field(default_factory=Meta)

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, list):
            seen: list[str] = []
            for tag in value:
                tag = str(tag).strip()
                if tag and tag not in seen:
                    seen.append(tag)
            return seen
        return value

    @property
    def sha256(self) -> str:
        return self.checksum.sha256

    def relocated(self, *, owner: str, repo: str, release: str) -> ItemRecord:
        """Return a copy whose payload descriptor points at another release."""
        source = self.source.model_copy(update={"owner": owner, "repo": repo, "release": release})
        return self.model_copy(update={"source": source}, deep=True)
