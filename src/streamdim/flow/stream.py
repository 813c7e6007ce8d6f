"""
Change stream over an entity's source table.

Every change made through ``ChangeStream`` is applied to the source table and
captured in the stream table in the same transaction. An update is captured
as a pair of rows, a DELETE carrying the old values and an INSERT carrying the
new ones, both flagged ``metadata_isupdate``. Reading a batch does not remove
anything; the consumer calls ``consume`` once the batch has been applied.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from streamdim.config.models import EntityConfig
from streamdim.ctl.schema import stream_sequence
from streamdim.engine.duckdb import transaction
from streamdim.flow.models import ChangeAction, ChangeRecord

logger = logging.getLogger(__name__)


class StreamBatch(BaseModel):
    records: List[ChangeRecord] = Field(default_factory=list)
    # Highest change_id covered by this batch; None when the stream was empty
    high_watermark: Optional[int] = None


def net_changes(records: Iterable[ChangeRecord]) -> List[ChangeRecord]:
    """
    Collapse each key's changes to their net effect.

    The first change of a key tells whether the row existed before the batch
    (it starts with a DELETE) and the last one tells whether it exists after
    (it ends with an INSERT). Keys are emitted in order of first appearance.
    """
    first: Dict[str, ChangeRecord] = {}
    last: Dict[str, ChangeRecord] = {}
    for record in records:
        first.setdefault(record.key, record)
        last[record.key] = record

    netted: List[ChangeRecord] = []
    for key, head in first.items():
        tail = last[key]
        existed = head.action == ChangeAction.DELETE
        exists = tail.action == ChangeAction.INSERT
        if existed and exists:
            if head.fields == tail.fields:
                continue
            netted.append(head.model_copy(update={"is_update": True}))
            netted.append(tail.model_copy(update={"is_update": True}))
        elif existed:
            netted.append(head.model_copy(update={"is_update": False}))
        elif exists:
            netted.append(tail.model_copy(update={"is_update": False}))
    return netted


class ChangeStream:
    """
    Captures row-level changes on ``entity.source`` into ``entity.stream``.

    Args:
        con: DuckDB connection
        entity: Entity configuration naming the tables and columns
        clock: Source of capture timestamps
    """

    def __init__(self, con: Any, entity: EntityConfig, clock=datetime.now):
        self.con = con
        self.entity = entity
        self.clock = clock

    # --------------------------------------------------------------- capture
    def insert(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert new rows into the source table. Existing keys raise ValueError."""
        prepared = [self._prepare(row) for row in rows]
        if not prepared:
            return 0
        keys = [key for key, _ in prepared]
        if len(set(keys)) != len(keys):
            raise ValueError("duplicate keys in insert")
        existing = self._existing(keys)
        if existing:
            raise ValueError(f"{self.entity.source}: key(s) already exist: {', '.join(sorted(existing))}")

        cols = self._columns()
        with transaction(self.con):
            self.con.executemany(
                f"INSERT INTO {self.entity.source} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [[key, *values] for key, values in prepared],
            )
            self._capture([(key, values, ChangeAction.INSERT, False) for key, values in prepared])
        logger.debug("Captured %d inserts on %s", len(prepared), self.entity.source)
        return len(prepared)

    def update(self, key: str, changes: Mapping[str, Any]) -> bool:
        """
        Update attribute values of one source row.

        Returns:
            False when the new values equal the old ones (nothing captured)

        Raises:
            ValueError: Unknown key or column
        """
        unknown = set(changes) - set(self.entity.attribute_columns)
        if unknown:
            raise ValueError(f"unknown column(s): {', '.join(sorted(unknown))}")
        old = self._fetch(key)
        if old is None:
            raise ValueError(f"{self.entity.source}: key '{key}' does not exist")
        new = dict(old)
        new.update({col: None if val is None else str(val) for col, val in changes.items()})
        if new == old:
            return False

        cols = self.entity.attribute_columns
        assignments = ", ".join(f"{col} = ?" for col in cols)
        with transaction(self.con):
            self.con.execute(
                f"UPDATE {self.entity.source} SET {assignments} WHERE {self.entity.key_column} = ?",
                [*(new[col] for col in cols), key],
            )
            self._capture([
                (key, [old[col] for col in cols], ChangeAction.DELETE, True),
                (key, [new[col] for col in cols], ChangeAction.INSERT, True),
            ])
        return True

    def delete(self, keys: Iterable[str]) -> int:
        """Delete source rows by key. Unknown keys are ignored."""
        cols = self.entity.attribute_columns
        found = []
        for key in dict.fromkeys(keys):
            old = self._fetch(key)
            if old is not None:
                found.append((key, [old[col] for col in cols], ChangeAction.DELETE, False))
        if not found:
            return 0
        with transaction(self.con):
            self.con.execute(
                f"DELETE FROM {self.entity.source} WHERE list_contains(?, {self.entity.key_column})",
                [[item[0] for item in found]],
            )
            self._capture(found)
        return len(found)

    # ------------------------------------------------------------ consumption
    def has_data(self) -> bool:
        """Whether the stream holds changes not yet consumed."""
        return self.count() > 0

    def count(self) -> int:
        return self.con.execute(f"SELECT COUNT(*) FROM {self.entity.stream}").fetchone()[0]

    def read_batch(self, net: bool = True) -> StreamBatch:
        """
        Read all unconsumed changes in capture order.

        Args:
            net: Collapse each key's changes to their net effect
        """
        key = self.entity.key_column
        cols = self.entity.attribute_columns
        rows = self.con.execute(f"""
            SELECT change_id, {key}, {', '.join(cols)}, metadata_action, metadata_isupdate
            FROM {self.entity.stream}
            ORDER BY change_id
        """).fetchall()
        if not rows:
            return StreamBatch()

        records = [
            ChangeRecord(
                change_id=row[0],
                key=row[1],
                fields=dict(zip(cols, row[2:2 + len(cols)])),
                action=row[-2],
                is_update=row[-1],
            )
            for row in rows
        ]
        high_watermark = rows[-1][0]
        if net:
            records = net_changes(records)
        return StreamBatch(records=records, high_watermark=high_watermark)

    def consume(self, high_watermark: Optional[int]) -> int:
        """Remove changes up to and including ``high_watermark``."""
        if high_watermark is None:
            return 0
        consumed = self.con.execute(
            f"SELECT COUNT(*) FROM {self.entity.stream} WHERE change_id <= ?",
            [high_watermark],
        ).fetchone()[0]
        self.con.execute(f"DELETE FROM {self.entity.stream} WHERE change_id <= ?", [high_watermark])
        logger.debug("Consumed %d changes from %s", consumed, self.entity.stream)
        return consumed

    # ---------------------------------------------------------------- helpers
    def _columns(self) -> List[str]:
        return [self.entity.key_column, *self.entity.attribute_columns]

    def _prepare(self, row: Mapping[str, Any]):
        key = row.get(self.entity.key_column)
        key = None if key is None else str(key).strip()
        if not key:
            raise ValueError(f"row is missing {self.entity.key_column}")
        values = [None if row.get(col) is None else str(row[col]) for col in self.entity.attribute_columns]
        return key, values

    def _existing(self, keys: List[str]) -> set:
        rows = self.con.execute(
            f"""
            SELECT {self.entity.key_column} FROM {self.entity.source}
            WHERE list_contains(?, {self.entity.key_column})
            """,
            [keys],
        ).fetchall()
        return {row[0] for row in rows}

    def _fetch(self, key: str) -> Optional[Dict[str, Optional[str]]]:
        cols = self.entity.attribute_columns
        row = self.con.execute(
            f"SELECT {', '.join(cols)} FROM {self.entity.source} WHERE {self.entity.key_column} = ?",
            [key],
        ).fetchone()
        if row is None:
            return None
        return dict(zip(cols, row))

    def _capture(self, changes) -> None:
        now = self.clock()
        cols = self._columns()
        self.con.executemany(
            f"""
            INSERT INTO {self.entity.stream}
                (change_id, {', '.join(cols)}, metadata_action, metadata_isupdate, captured_at)
            VALUES (nextval('{stream_sequence(self.entity)}'), {', '.join('?' for _ in cols)}, ?, ?, ?)
            """,
            [[key, *values, action.value, is_update, now] for key, values, action, is_update in changes],
        )
