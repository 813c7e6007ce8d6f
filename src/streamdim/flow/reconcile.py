"""
Apply a batch of change records to a versioned (SCD Type 2) history table.

A pass runs three ordered phases inside one transaction:

1. close the current version of every key with an update-flagged record;
2. close the current version of every key with a DELETE record;
3. open a new current version for every key with an INSERT record and no
   current version left.

Closes run before opens so that a DELETE followed by a re-INSERT of the same
key in one batch ends with exactly one current version. Every timestamp
written in a pass comes from a single clock read.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

import duckdb
from pydantic import ValidationError

from streamdim.config.models import EntityConfig
from streamdim.ctl.schema import history_sequence
from streamdim.engine.duckdb import transaction
from streamdim.flow.errors import InvariantViolation, ReconcileError, TransientStorageError
from streamdim.flow.models import (
    ChangeAction,
    ChangeRecord,
    MalformedRecord,
    ReconcileResult,
    ReconcileStats,
    VersionedEntity,
    row_hash,
)

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_table_locks: Dict[str, threading.Lock] = {}


def table_lock(table: str) -> threading.Lock:
    """Process-wide lock serialising passes against one history table."""
    with _locks_guard:
        return _table_locks.setdefault(table, threading.Lock())


class Reconciler:
    """
    Reconciles change records into the history table of one entity.

    Args:
        con: DuckDB connection holding the history table
        entity: Entity configuration naming the table and its columns
        detect_unchanged: Leave a key untouched when its current version
            already carries the values of the batch's INSERT record for it.
            This is what makes replaying an update or DELETE+INSERT batch a no-op.
        clock: Source of the pass timestamp
    """

    def __init__(
        self,
        con: duckdb.DuckDBPyConnection,
        entity: EntityConfig,
        detect_unchanged: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.con = con
        self.entity = entity
        self.detect_unchanged = detect_unchanged
        self.clock = clock

    def reconcile(self, batch: Iterable[Union[ChangeRecord, Dict[str, Any]]]) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Returns:
            ReconcileResult with a status message and pass statistics. Records
            without a key are skipped and listed in ``stats.malformed``.

        Raises:
            TransientStorageError: A read or write failed; nothing was applied.
            InvariantViolation: A key has more than one current version; nothing was applied.
        """
        records, stats = self._validate(batch)
        table = self.entity.history
        now = self.clock()
        if now.tzinfo is not None:
            # history timestamps are naive local time
            now = now.astimezone().replace(tzinfo=None)

        with table_lock(table):
            try:
                with transaction(self.con):
                    current = self._load_current({r.key for r in records})
                    unchanged = self._unchanged_keys(records, current)
                    stats.records_unchanged = sum(1 for r in records if r.key in unchanged)

                    stats.rows_closed += self._close_updated(records, current, unchanged, now)
                    stats.rows_closed += self._close_deleted(records, current, unchanged, now)
                    stats.rows_inserted = self._open_inserted(records, current, unchanged, now)

                    self._check_single_current({r.key for r in records})
            except ReconcileError as exc:
                logger.error("Reconciliation of %s rolled back: %s", table, exc)
                raise
            except duckdb.Error as exc:
                logger.warning("Reconciliation of %s rolled back after storage error: %s", table, exc)
                raise TransientStorageError(f"{table}: {exc}") from exc

        logger.info(
            "Reconciled %s: received=%d closed=%d inserted=%d unchanged=%d malformed=%d",
            table,
            stats.records_received,
            stats.rows_closed,
            stats.rows_inserted,
            stats.records_unchanged,
            len(stats.malformed),
        )
        return ReconcileResult(
            message=f"Reconciliation of {table} completed successfully",
            stats=stats,
        )

    # ------------------------------------------------------------------ input
    def _validate(self, batch) -> Tuple[List[ChangeRecord], ReconcileStats]:
        stats = ReconcileStats()
        records: List[ChangeRecord] = []
        for position, item in enumerate(batch):
            stats.records_received += 1
            try:
                record = item if isinstance(item, ChangeRecord) else ChangeRecord.model_validate(item)
            except ValidationError as exc:
                reason = f"invalid change record: {exc.errors()[0]['msg']}"
                stats.malformed.append(MalformedRecord(position=position, reason=reason))
                logger.warning("Skipping change record %d: %s", position, reason)
                continue
            if record.key is None:
                reason = f"missing {self.entity.key_column}"
                stats.malformed.append(MalformedRecord(position=position, reason=reason))
                logger.warning("Skipping change record %d: %s", position, reason)
                continue
            records.append(record)
        return records, stats

    # ------------------------------------------------------------------ reads
    def _load_current(self, keys: Set[str]) -> Dict[str, VersionedEntity]:
        if not keys:
            return {}
        key = self.entity.key_column
        cols = self.entity.attribute_columns
        rows = self.con.execute(
            f"""
            SELECT version_key, {key}, {', '.join(cols)}, valid_from, valid_to, is_current, _row_hash
            FROM {self.entity.history}
            WHERE is_current = TRUE AND list_contains(?, {key})
            ORDER BY {key}, version_key
            """,
            [sorted(keys)],
        ).fetchall()

        current: Dict[str, VersionedEntity] = {}
        duplicates: List[str] = []
        for row in rows:
            version = VersionedEntity(
                version_key=row[0],
                key=row[1],
                attributes=dict(zip(cols, row[2:2 + len(cols)])),
                valid_from=row[-4],
                valid_to=row[-3],
                is_current=row[-2],
                row_hash=row[-1],
            )
            if version.key in current:
                duplicates.append(version.key)
            current[version.key] = version
        if duplicates:
            raise InvariantViolation(self.entity.history, sorted(set(duplicates)))
        return current

    def _unchanged_keys(self, records: List[ChangeRecord], current: Dict[str, VersionedEntity]) -> Set[str]:
        if not self.detect_unchanged:
            return set()
        unchanged = set()
        for key, record in self._last_inserts(records).items():
            version = current.get(key)
            if version is None:
                continue
            if version.row_hash == row_hash(record.fields, self.entity.attribute_columns):
                unchanged.add(key)
        return unchanged

    @staticmethod
    def _last_inserts(records: List[ChangeRecord]) -> Dict[str, ChangeRecord]:
        last: Dict[str, ChangeRecord] = {}
        for record in records:
            if record.action == ChangeAction.INSERT:
                last[record.key] = record
        return last

    # ----------------------------------------------------------------- phases
    def _close(self, version: VersionedEntity, now: datetime) -> None:
        # valid_to never precedes valid_from, even if the clock went backwards
        valid_to = max(now, version.valid_from)
        self.con.execute(
            f"""
            UPDATE {self.entity.history}
            SET valid_to = ?, is_current = FALSE
            WHERE version_key = ? AND is_current = TRUE
            """,
            [valid_to, version.version_key],
        )

    def _close_updated(self, records, current, unchanged, now) -> int:
        closed = 0
        for record in records:
            if not record.is_update or record.key in unchanged:
                continue
            version = current.pop(record.key, None)
            if version is None:
                logger.debug("No current version of %s to close for update", record.key)
                continue
            self._close(version, now)
            closed += 1
        return closed

    def _close_deleted(self, records, current, unchanged, now) -> int:
        closed = 0
        for record in records:
            if record.action != ChangeAction.DELETE or record.key in unchanged:
                continue
            version = current.pop(record.key, None)
            if version is None:
                continue
            self._close(version, now)
            closed += 1
        return closed

    def _open_inserted(self, records, current, unchanged, now) -> int:
        key = self.entity.key_column
        cols = self.entity.attribute_columns
        rows = []
        for record_key, record in self._last_inserts(records).items():
            if record_key in unchanged or record_key in current:
                continue
            values = [record.fields.get(col) for col in cols]
            rows.append([record_key, *values, now, row_hash(record.fields, cols)])

        if rows:
            placeholders = ", ".join("?" for _ in cols)
            self.con.executemany(
                f"""
                INSERT INTO {self.entity.history}
                    (version_key, {key}, {', '.join(cols)}, valid_from, valid_to, is_current, _row_hash)
                VALUES (nextval('{history_sequence(self.entity)}'), ?, {placeholders}, ?, NULL, TRUE, ?)
                """,
                rows,
            )
        return len(rows)

    def _check_single_current(self, keys: Set[str]) -> None:
        if not keys:
            return
        key = self.entity.key_column
        dupes = self.con.execute(
            f"""
            SELECT {key} FROM {self.entity.history}
            WHERE is_current = TRUE AND list_contains(?, {key})
            GROUP BY {key}
            HAVING COUNT(*) > 1
            """,
            [sorted(keys)],
        ).fetchall()
        if dupes:
            raise InvariantViolation(self.entity.history, sorted(row[0] for row in dupes))


def reconcile(
    con: duckdb.DuckDBPyConnection,
    entity: EntityConfig,
    batch: Iterable[Union[ChangeRecord, Dict[str, Any]]],
    detect_unchanged: bool = True,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Run a single reconciliation pass of ``batch`` against ``entity``'s history table."""
    clock = (lambda: now) if now is not None else datetime.now
    return Reconciler(con, entity, detect_unchanged=detect_unchanged, clock=clock).reconcile(batch)
