"""In-memory conversion store keyed by offer ID (last write wins)."""

from __future__ import annotations

import time
from typing import Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class ConversionRecord(BaseModel):
    # Key of the store; /check already knows it, so it stays out of the JSON.
    offer_id: str = Field(min_length=1, exclude=True)
    timestamp: int = Field(default_factory=now_ms)
    payout: str = "0"
    ip: str

    model_config = {"frozen": True, "extra": "forbid"}


class ConversionStore:
    """
    Process-lifetime map of offer_id → ConversionRecord.

    A second record for the same offer ID replaces the first.  There is no
    delete and no eviction; a single dict assignment per write keeps
    concurrent writers to different keys independent.
    """

    def __init__(self) -> None:
        self._records: dict[str, ConversionRecord] = {}

    def put(self, record: ConversionRecord) -> ConversionRecord:
        self._records[record.offer_id] = record
        return record

    def get(self, offer_id: str) -> Optional[ConversionRecord]:
        return self._records.get(offer_id)

    def __contains__(self, offer_id: object) -> bool:
        return offer_id in self._records

    def __len__(self) -> int:
        return len(self._records)
