"""DuckDB engine utilities."""
from __future__ import annotations

import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import duckdb
import polars as pl


def connect(uri: str) -> duckdb.DuckDBPyConnection:
    """
    Connect to a DuckDB database.

    Args:
        uri: Connection URI (e.g., 'duckdb://file:db.duckdb')

    Returns:
        DuckDB connection object
    """
    # Parse URI - support duckdb://file:path format
    if uri.startswith("duckdb://file:"):
        db_path = uri.replace("duckdb://file:", "")
    elif uri.startswith("duckdb://"):
        db_path = uri.replace("duckdb://", "")
    else:
        db_path = uri

    return duckdb.connect(db_path or ":memory:")


def resolve_uri(uri: str, base: Path) -> str:
    """Anchor a relative database file in ``uri`` at ``base``."""
    prefix = next((p for p in ("duckdb://file:", "duckdb://") if uri.startswith(p)), "")
    db_path = uri[len(prefix):]
    if not db_path or db_path == ":memory:" or Path(db_path).is_absolute():
        return uri
    return f"{prefix or 'duckdb://file:'}{base / db_path}"


def fetch_df(con: duckdb.DuckDBPyConnection, query: str, params: Any = None) -> pl.DataFrame:
    """
    Execute a query and return results as a Polars DataFrame.

    Args:
        con: Database connection
        query: SQL query to execute
        params: Optional positional parameters for the query

    Returns:
        Query results as DataFrame (Polars)
    """
    if params is None:
        return con.execute(query).pl()
    return con.execute(query, params).pl()


@contextmanager
def transaction(con: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run the enclosed statements in one transaction, rolling back on any error."""
    con.begin()
    try:
        yield con
    except BaseException:
        con.rollback()
        raise
    else:
        con.commit()


def validate_identifier(identifier: str, identifier_type: str = "identifier") -> str:
    """
    Validate SQL identifier to prevent injection.

    Args:
        identifier: The identifier to validate (schema name, table name, column name)
        identifier_type: Type of identifier for error messages

    Returns:
        The validated identifier

    Raises:
        ValueError: If identifier is invalid
    """
    # Allow alphanumeric, underscore, and limit length
    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', identifier):
        raise ValueError(
            f"Invalid {identifier_type} '{identifier}'. "
            "Must start with letter or underscore and contain only alphanumeric characters and underscores."
        )
    if len(identifier) > 63:  # PostgreSQL/DuckDB limit
        raise ValueError(f"{identifier_type} '{identifier}' is too long (max 63 characters)")
    return identifier
