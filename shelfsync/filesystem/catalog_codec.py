"""Catalog document reader/writer and in-memory list operations."""

from __future__ import annotations

import logging
from typing import Any

import yaml
from pydantic import ValidationError

from shelfsync.exceptions import CatalogFormatError
from shelfsync.schemas.item import ItemRecord

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = "catalog.yml"


def parse_catalog(data: bytes | str | None) -> list[ItemRecord]:
    """Decode a catalog document into a record list.

    An empty document is an empty catalog.  Anything that is not a YAML list of
    valid records raises CatalogFormatError.
    """
    if not data:
        return []
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        msg = f"catalog is not valid YAML: {exc}"
        raise CatalogFormatError(msg) from exc

    if raw is None:
        return []
    if not isinstance(raw, list):
        msg = f"catalog must be a list of records, got {type(raw).__name__}"
        raise CatalogFormatError(msg)

    records: list[ItemRecord] = []
    for index, entry in enumerate(raw):
        try:
            records.append(ItemRecord.model_validate(entry))
        except ValidationError as exc:
            msg = f"catalog entry {index} is invalid: {exc}"
            raise CatalogFormatError(msg) from exc
    return records


def _record_to_dict(record: ItemRecord) -> dict[str, Any]:
    data = record.model_dump()
    # Optional fields are omitted when empty, keeping the document hand-editable.
    for key in ("author", "year", "tags", "format", "size_bytes"):
        if not data.get(key):
            data.pop(key, None)
    if not data["checksum"].get("sha256"):
        data.pop("checksum")
    meta = {k: v for k, v in data["meta"].items() if v}
    if meta:
        data["meta"] = meta
    else:
        data.pop("meta")
    return data


def marshal_catalog(records: list[ItemRecord]) -> bytes:
    """Encode a record list as a YAML document."""
    payload = [_record_to_dict(record) for record in records]
    text = yaml.safe_dump(
        payload,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        indent=2,
    )
    return text.encode("utf-8")


def append_record(records: list[ItemRecord], record: ItemRecord) -> list[ItemRecord]:
    """Return records with record added, replacing any record with the same id."""
    result = list(records)
    for index, existing in enumerate(result):
        if existing.id == record.id:
            result[index] = record
            return result
    result.append(record)
    return result


def remove_record(records: list[ItemRecord], item_id: str) -> tuple[list[ItemRecord], bool]:
    """Return records without item_id and whether a record was removed."""
    result = [record for record in records if record.id != item_id]
    return result, len(result) != len(records)


def find_record(records: list[ItemRecord], item_id: str) -> ItemRecord | None:
    """Return the record with the given id, or None."""
    for record in records:
        if record.id == item_id:
            return record
    return None


def digest_index(records: list[ItemRecord]) -> set[str]:
    """Return the set of payload digests present in records."""
    return {record.checksum.sha256 for record in records if record.checksum.sha256}
