"""Reconciliation errors."""
from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures that abort a reconciliation pass."""


class TransientStorageError(ReconcileError):
    """Reading or writing the history table failed; the pass was rolled back and may be retried."""


class InvariantViolation(ReconcileError):
    """More than one current version exists for a key. Retrying will not fix this."""

    def __init__(self, table: str, keys: list[str]):
        self.table = table
        self.keys = keys
        shown = ", ".join(keys[:10])
        more = f" (+{len(keys) - 10} more)" if len(keys) > 10 else ""
        super().__init__(f"{table}: multiple current versions for key(s) {shown}{more}")
