"""Record types exchanged between the change stream and the reconciler."""
from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, field_validator


class ChangeAction(str, Enum):
    INSERT = "INSERT"
    DELETE = "DELETE"


class ChangeRecord(BaseModel):
    """
    One observed mutation on the source entity.

    An update is captured as a DELETE of the old values and an INSERT of the
    new values, both with ``is_update`` set. ``change_id`` is the record's
    position in the stream when it came from one.
    """
    key: Optional[str] = None
    fields: Dict[str, Optional[str]] = Field(default_factory=dict)
    action: ChangeAction
    is_update: bool = False
    change_id: Optional[int] = None

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("key", mode="before")
    @classmethod
    def _normalise_key(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class VersionedEntity(BaseModel):
    """One historical version of a business key."""
    version_key: int
    key: str
    attributes: Dict[str, Optional[str]]
    valid_from: datetime
    valid_to: Optional[datetime] = None
    is_current: bool = True
    row_hash: Optional[str] = None


class MalformedRecord(BaseModel):
    position: int
    reason: str


class ReconcileStats(BaseModel):
    records_received: int = 0
    rows_closed: int = 0
    rows_inserted: int = 0
    records_unchanged: int = 0
    malformed: List[MalformedRecord] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    message: str
    stats: ReconcileStats


def row_hash(fields: Dict[str, Optional[str]], columns: Sequence[str]) -> str:
    """SHA256 over the attribute values in column order, joined with '|'."""
    joined = "|".join("" if fields.get(col) is None else str(fields[col]) for col in columns)
    return hashlib.sha256(joined.encode()).hexdigest()
