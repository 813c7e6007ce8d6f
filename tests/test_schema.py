"""Tests for table provisioning and cleanup."""
import tempfile
from pathlib import Path

import duckdb

from streamdim.config.models import EntityConfig
from streamdim.ctl.schema import (
    drop_entity_objects,
    ensure_ctl_tables,
    ensure_entity_tables,
    table_exists,
)


def test_ensure_ctl_tables_creates_run_log():
    """Test that ensure_ctl_tables creates the run_log table."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.duckdb"
        con = duckdb.connect(str(db_path))

        ensure_ctl_tables(con)
        ensure_ctl_tables(con)

        schema = con.execute("DESCRIBE run_log").fetchall()
        column_names = [col[0] for col in schema]
        for col in ("run_id", "pipeline", "status", "rows_closed", "rows_inserted", "rows_malformed"):
            assert col in column_names

        con.close()


def test_ensure_entity_tables_uses_configured_names():
    with tempfile.TemporaryDirectory() as tmpdir:
        con = duckdb.connect(str(Path(tmpdir) / "test.duckdb"))
        entity = EntityConfig(
            name="stores",
            schema="retail",
            key_column="store_id",
            attribute_columns=["store_name", "region"],
            source_table="source_stores",
            stream_table="stream_stores",
            history_table="stores",
        )

        ensure_entity_tables(con, entity)
        ensure_entity_tables(con, entity)

        for table in ("source_stores", "stream_stores", "stores"):
            assert table_exists(con, "retail", table)
        columns = [col[0] for col in con.execute("DESCRIBE retail.stores").fetchall()]
        assert columns == [
            "version_key", "store_id", "store_name", "region",
            "valid_from", "valid_to", "is_current", "_row_hash",
        ]

        con.close()


def test_drop_entity_objects_matches_created_names():
    """Cleanup drops exactly what provisioning created, schema included."""
    with tempfile.TemporaryDirectory() as tmpdir:
        con = duckdb.connect(str(Path(tmpdir) / "test.duckdb"))
        entity = EntityConfig()
        ensure_entity_tables(con, entity)

        drop_entity_objects(con, entity)

        for table in ("source_products", "stream_products", "products"):
            assert not table_exists(con, "products", table)
        schemas = [row[0] for row in con.execute(
            "SELECT schema_name FROM information_schema.schemata"
        ).fetchall()]
        assert "products" not in schemas

        # dropping again is harmless and provisioning works afterwards
        drop_entity_objects(con, entity)
        ensure_entity_tables(con, entity)
        assert table_exists(con, "products", "products")

        con.close()
