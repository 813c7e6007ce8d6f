"""Control table and entity table schema management."""
from __future__ import annotations

import logging
from typing import Any

from streamdim.config.models import EntityConfig

logger = logging.getLogger(__name__)


def ensure_ctl_tables(con: Any) -> None:
    """
    Ensure control/metadata tables exist in the database.

    Args:
        con: Database connection
    """
    # One row per task run against a pipeline
    con.execute("""
        CREATE TABLE IF NOT EXISTS run_log (
            run_id INTEGER PRIMARY KEY,
            pipeline VARCHAR,
            step VARCHAR,
            entity VARCHAR,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            status VARCHAR,
            rows_in BIGINT,
            rows_closed BIGINT,
            rows_inserted BIGINT,
            rows_malformed BIGINT,
            error_message VARCHAR
        )
    """)

    # Create sequence for run_id
    con.execute("CREATE SEQUENCE IF NOT EXISTS run_log_seq START 1")


def stream_sequence(entity: EntityConfig) -> str:
    return entity.qualified(f"{entity.stream_table}_seq")


def history_sequence(entity: EntityConfig) -> str:
    return entity.qualified(f"{entity.history_table}_key_seq")


def ensure_entity_tables(con: Any, entity: EntityConfig) -> None:
    """
    Create the schema, source table, change stream table and versioned history
    table for an entity. Existing objects are left untouched.

    Args:
        con: Database connection
        entity: Entity configuration naming the tables and columns
    """
    key = entity.key_column
    attribute_defs = ",\n            ".join(f"{col} VARCHAR" for col in entity.attribute_columns)

    con.execute(f"CREATE SCHEMA IF NOT EXISTS {entity.schema_name}")

    # Raw table the change stream observes
    con.execute(f"""
        CREATE TABLE IF NOT EXISTS {entity.source} (
            {key} VARCHAR NOT NULL,
            {attribute_defs}
        )
    """)

    # Change log: one row per captured insert/delete, updates as a flagged pair
    con.execute(f"CREATE SEQUENCE IF NOT EXISTS {stream_sequence(entity)} START 1")
    con.execute(f"""
        CREATE TABLE IF NOT EXISTS {entity.stream} (
            change_id BIGINT PRIMARY KEY,
            {key} VARCHAR,
            {attribute_defs},
            metadata_action VARCHAR NOT NULL,
            metadata_isupdate BOOLEAN NOT NULL,
            captured_at TIMESTAMP NOT NULL
        )
    """)

    # Versioned history (SCD Type 2)
    con.execute(f"CREATE SEQUENCE IF NOT EXISTS {history_sequence(entity)} START 1")
    con.execute(f"""
        CREATE TABLE IF NOT EXISTS {entity.history} (
            version_key BIGINT PRIMARY KEY,
            {key} VARCHAR NOT NULL,
            {attribute_defs},
            valid_from TIMESTAMP NOT NULL,
            valid_to TIMESTAMP,
            is_current BOOLEAN NOT NULL,
            _row_hash VARCHAR
        )
    """)
    logger.info("Provisioned tables for entity %s in schema %s", entity.name, entity.schema_name)


def drop_entity_objects(con: Any, entity: EntityConfig) -> None:
    """
    Drop every object created by ``ensure_entity_tables``.

    The schema itself is dropped only when nothing else remains in it.
    """
    for table in (entity.stream, entity.history, entity.source):
        con.execute(f"DROP TABLE IF EXISTS {table}")
    for seq in (stream_sequence(entity), history_sequence(entity)):
        con.execute(f"DROP SEQUENCE IF EXISTS {seq}")

    remaining = con.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ?",
        [entity.schema_name],
    ).fetchone()[0]
    if remaining == 0:
        con.execute(f"DROP SCHEMA IF EXISTS {entity.schema_name}")
    logger.info("Dropped tables for entity %s", entity.name)


def table_exists(con: Any, schema: str, table: str) -> bool:
    return con.execute(
        """
        SELECT COUNT(*) FROM information_schema.tables
        WHERE table_schema = ? AND table_name = ?
        """,
        [schema, table],
    ).fetchone()[0] > 0
