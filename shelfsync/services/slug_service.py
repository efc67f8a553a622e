"""Item id generation and validation."""

from __future__ import annotations

import re
import unicodedata
from pathlib import PurePosixPath

from shelfsync.exceptions import InvalidItemIdError

MAX_ID_LENGTH = 63
ITEM_ID_PATTERN = r"^[a-z0-9][a-z0-9-]{1,62}$"
ITEM_ID_RE = re.compile(ITEM_ID_PATTERN)


def generate_item_id(title: str) -> str:
    """Generate an item id from a title or file name.

    - Normalize unicode to ASCII (NFKD)
    - Lowercase, strip
    - Replace non-alphanumeric chars with hyphens
    - Strip leading/trailing hyphens
    - Truncate to 63 chars (don't cut mid-word if possible)
    - Return "item" for input with nothing usable in it
    """
    text = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    text = text.lower().strip()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")

    if not text:
        return "item"

    if len(text) > MAX_ID_LENGTH:
        truncated = text[:MAX_ID_LENGTH]
        last_hyphen = truncated.rfind("-")
        if last_hyphen > 0:
            truncated = truncated[:last_hyphen]
        text = truncated.rstrip("-")

    # A single character is too short for an id.
    if len(text) < 2:
        text = f"{text}-item"
    return text


def id_from_path(path: str) -> str:
    """Derive an item id from the stem of a repository path."""
    return generate_item_id(PurePosixPath(path).stem)


def validate_item_id(item_id: str) -> str:
    """Return item_id unchanged, raising InvalidItemIdError if it is malformed."""
    if not ITEM_ID_RE.match(item_id):
        msg = f"invalid id {item_id!r}: must match {ITEM_ID_PATTERN}"
        raise InvalidItemIdError(msg)
    return item_id


def asset_name_for(item_id: str, extension: str) -> str:
    """Return the asset file name an item's payload is stored under."""
    extension = extension.lower().lstrip(".")
    return f"{item_id}.{extension}" if extension else item_id
