"""Task execution: one stream-guarded reconciliation run, and the cadence loop around it."""
from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Optional

import duckdb

from streamdim.config.models import PipelineConfig
from streamdim.ctl.schema import ensure_ctl_tables
from streamdim.flow.errors import ReconcileError, TransientStorageError
from streamdim.flow.models import ReconcileStats
from streamdim.flow.reconcile import Reconciler
from streamdim.flow.stream import ChangeStream

logger = logging.getLogger(__name__)

_UNITS = {
    "s": 1, "sec": 1, "second": 1,
    "m": 60, "min": 60, "minute": 60,
    "h": 3600, "hour": 3600,
}


class RunResult:
    """Result of a task run."""

    def __init__(self, status: str, summary: str, stats: Optional[ReconcileStats] = None):
        self.status = status
        self.summary = summary
        self.stats = stats


def parse_schedule(schedule: str) -> int:
    """
    Convert a schedule such as ``"5 minute"``, ``"30 seconds"`` or ``"2h"`` to seconds.

    Raises:
        ValueError: If the schedule is not understood or is not positive
    """
    match = re.fullmatch(r"\s*(\d+)\s*([a-zA-Z]+)\s*", schedule)
    if not match:
        raise ValueError(f"Invalid schedule '{schedule}', expected e.g. '5 minute'")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if unit not in _UNITS and len(unit) > 2 and unit.endswith("s") and unit[:-1] in _UNITS:
        unit = unit[:-1]
    if unit not in _UNITS:
        raise ValueError(f"Invalid schedule unit '{match.group(2)}' in '{schedule}'")
    if amount <= 0:
        raise ValueError(f"Schedule must be positive, got '{schedule}'")
    return amount * _UNITS[unit]


def schedule_to_cron(seconds: int) -> str:
    """Closest crontab expression for a fixed interval; cron cannot go below a minute."""
    minutes = max(seconds // 60, 1)
    if minutes % 1440 == 0:
        return "0 0 * * *"
    if minutes % 60 == 0:
        return f"0 */{minutes // 60} * * *"
    if minutes == 1:
        return "* * * * *"
    return f"*/{minutes} * * * *"


def _log_run(con: Any, config: PipelineConfig, started_at: datetime, status: str,
             rows_in: int, stats: Optional[ReconcileStats], error: Optional[str]) -> None:
    con.execute(
        """
        INSERT INTO run_log (
            run_id, pipeline, step, entity, started_at, completed_at, status,
            rows_in, rows_closed, rows_inserted, rows_malformed, error_message
        )
        VALUES (nextval('run_log_seq'), ?, 'reconcile', ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            config.name,
            config.entity.name,
            started_at,
            datetime.now(),
            status,
            rows_in,
            stats.rows_closed if stats else 0,
            stats.rows_inserted if stats else 0,
            len(stats.malformed) if stats else 0,
            error,
        ],
    )


def _failed(con: Any, config: PipelineConfig, started_at: datetime, rows_in: int,
            exc: duckdb.Error, stats: Optional[ReconcileStats] = None) -> TransientStorageError:
    error = TransientStorageError(f"{config.entity.stream}: {exc}")
    logger.warning("Task %s failed on stream %s: %s", config.task.name, config.entity.stream, exc)
    try:
        _log_run(con, config, started_at, "failed", rows_in, stats, str(error))
    except duckdb.Error as log_exc:
        logger.error("Could not record failed run of %s in run_log: %s", config.task.name, log_exc)
    return error


def run_task(con: Any, config: PipelineConfig, force: bool = False) -> RunResult:
    """
    Run one reconciliation task for a pipeline.

    When the stream holds no changes the run is skipped (unless ``force``).
    Otherwise the pending changes are reconciled into the history table and,
    only after the pass commits, consumed from the stream. Every run that
    reaches the reconciler is recorded in ``run_log``.

    Args:
        con: Database connection
        config: Pipeline configuration
        force: Reconcile even when the stream is empty

    Returns:
        RunResult with status ``skipped`` or ``success``

    Raises:
        ReconcileError: The pass failed; the stream is left unconsumed
        TransientStorageError: Reading or consuming the stream failed
    """
    ensure_ctl_tables(con)
    stream = ChangeStream(con, config.entity)
    started_at = datetime.now()
    try:
        has_data = stream.has_data()
    except duckdb.Error as exc:
        raise _failed(con, config, started_at, 0, exc) from exc
    if not force and not has_data:
        logger.info("Stream %s has no data, skipping %s", config.entity.stream, config.task.name)
        return RunResult("skipped", f"{config.entity.stream} has no data")

    try:
        batch = stream.read_batch()
    except duckdb.Error as exc:
        raise _failed(con, config, started_at, 0, exc) from exc
    reconciler = Reconciler(con, config.entity, detect_unchanged=config.reconcile.detect_unchanged)
    try:
        result = reconciler.reconcile(batch.records)
    except ReconcileError as exc:
        _log_run(con, config, started_at, "failed", len(batch.records), None, str(exc))
        raise

    stats = result.stats
    try:
        consumed = stream.consume(batch.high_watermark)
    except duckdb.Error as exc:
        # the pass committed; the next run replays the batch as a no-op
        raise _failed(con, config, started_at, stats.records_received, exc, stats) from exc
    _log_run(con, config, started_at, "success", stats.records_received, stats, None)
    summary = (
        f"{result.message}: closed={stats.rows_closed} inserted={stats.rows_inserted} "
        f"unchanged={stats.records_unchanged} malformed={len(stats.malformed)} consumed={consumed}"
    )
    return RunResult("success", summary, stats)


def run_schedule(
    con: Any,
    config: PipelineConfig,
    every: Optional[int] = None,
    max_runs: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_result: Optional[Callable[[RunResult], None]] = None,
) -> int:
    """
    Run ``run_task`` on a fixed cadence.

    Args:
        every: Seconds between runs; defaults to the pipeline's task schedule
        max_runs: Stop after this many runs (None runs forever)
        sleep: Sleep function, replaceable in tests
        on_result: Called with each successful or skipped run's result

    Returns:
        Number of runs attempted
    """
    interval = every if every is not None else parse_schedule(config.task.schedule)
    runs = 0
    while max_runs is None or runs < max_runs:
        runs += 1
        try:
            result = run_task(con, config)
        except ReconcileError as exc:
            logger.error("Task %s run %d failed: %s", config.task.name, runs, exc)
        else:
            if on_result is not None:
                on_result(result)
        if max_runs is not None and runs >= max_runs:
            break
        sleep(interval)
    return runs
