"""Engine-level exception types.

Convention:
- ``NotFoundError``: a remote shelf, release, asset or catalog is absent.  Often
  an expected state (a shelf without a catalog is an empty shelf); callers decide.
- ``ConflictError``: the destination already holds an asset or record with that
  name, or a move targets the location the item already lives at.
- ``TransientIOError``: network or disk failure.  Never retried here; surfaced.
- ``InvariantViolationError``: checksum mismatch or a malformed catalog.  Always
  fatal to the operation that triggered it and never patched over.
- ``ValueError`` subclasses (``InvalidItemIdError``): user input errors that are
  safe to print verbatim.

Single-item operations wrap the first failing essential step in
``OperationError`` so the caller sees the item id and step name.
"""

from __future__ import annotations


class ShelfError(Exception):
    """Base class for all engine errors."""


class NotFoundError(ShelfError):
    """Raised when a remote resource does not exist."""


class CatalogNotFoundError(NotFoundError):
    """Raised when a shelf has no catalog document yet."""


class ConflictError(ShelfError):
    """Raised when the destination already has a resource with that name or id."""


class AuthError(ShelfError):
    """Raised when the remote rejects the configured credentials."""


class TransientIOError(ShelfError):
    """Raised for network or disk failures."""


class InvariantViolationError(ShelfError):
    """Raised when stored data contradicts what the catalog says about it."""


class ChecksumMismatchError(InvariantViolationError):
    """Raised when downloaded bytes do not hash to the recorded checksum."""

    def __init__(self, expected: str, actual: str, *, context: str = "") -> None:
        self.expected = expected
        self.actual = actual
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}checksum mismatch: expected {expected}, got {actual}")


class CatalogFormatError(InvariantViolationError):
    """Raised when a catalog document cannot be parsed."""


class InvalidItemIdError(ValueError):
    """Raised when an item id does not match the id pattern."""


class OperationError(ShelfError):
    """Raised when an essential step of a single-item operation fails.

    ``step`` names the step (``"upload"``, ``"commit-source"``, ...) so the user
    can retry manually from a known point.
    """

    def __init__(self, item_id: str, step: str, cause: BaseException) -> None:
        self.item_id = item_id
        self.step = step
        self.cause = cause
        super().__init__(f"{item_id}: {step} failed: {cause}")
