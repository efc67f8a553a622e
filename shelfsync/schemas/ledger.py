"""Migration ledger schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class LedgerEntry(BaseModel):
    """One completed import, recorded after its payload was uploaded."""

    source: str = Field(min_length=1, description="Source locator, e.g. owner/repo:path")
    item_id: str
    shelf: str
    release: str = Field(default="", description="Destination release the payload was uploaded to")
    timestamp: datetime | None = None
