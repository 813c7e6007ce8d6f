"""Tests for CSV import into the source table."""
import tempfile
from pathlib import Path

import duckdb
import pytest

from streamdim.config.models import EntityConfig
from streamdim.ctl.schema import ensure_entity_tables
from streamdim.flow.ingest import load_csv, read_source_csv
from streamdim.flow.stream import ChangeStream


ENTITY = EntityConfig()

HEADER = "PRODUCT_NAME,CURRENT_PRICE,PREVIOUS_PRICE,PRICE_PER_EACH,CATEGORY,PRODUCT_ID,PRODUCT_URL\n"


def _write(tmpdir, name, body):
    path = Path(tmpdir) / name
    path.write_text(HEADER + body)
    return path


def test_read_source_csv_normalises_columns():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "p.csv", " Milk ,1.65,,0.73/litre, Fresh Food ,1001, https://x/1001 \n")

        df = read_source_csv(path, ENTITY)

        assert df.columns == ["product_id", *ENTITY.attribute_columns]
        row = df.row(0, named=True)
        assert row["product_id"] == "1001"
        assert row["product_name"] == "Milk"
        assert row["category"] == "Fresh Food"
        assert row["product_url"] == "https://x/1001"
        assert row["previous_price"] is None


def test_read_source_csv_requires_key_column():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bad.csv"
        path.write_text("name,price\nMilk,1\n")

        with pytest.raises(ValueError, match="product_id"):
            read_source_csv(path, ENTITY)


def test_load_csv_inserts_updates_and_prunes():
    with tempfile.TemporaryDirectory() as tmpdir:
        con = duckdb.connect(str(Path(tmpdir) / "test.duckdb"))
        ensure_entity_tables(con, ENTITY)

        first = _write(tmpdir, "day1.csv", (
            "Milk,1.65,,0.73/litre,Fresh Food,1001,https://x/1001\n"
            "Eggs,3.20,3.50,0.27/each,Fresh Food,1002,https://x/1002\n"
            "No id,1.00,,,Misc,,https://x/none\n"
        ))
        counts = load_csv(con, ENTITY, first)
        assert counts == {"inserted": 2, "updated": 0, "unchanged": 0, "deleted": 0, "skipped": 1}

        second = _write(tmpdir, "day2.csv", (
            "Milk,1.75,1.65,0.77/litre,Fresh Food,1001,https://x/1001\n"
            "Bread,1.10,,0.14/100g,Bakery,1003,https://x/1003\n"
        ))
        counts = load_csv(con, ENTITY, second, prune=True)
        assert counts == {"inserted": 1, "updated": 1, "unchanged": 0, "deleted": 1, "skipped": 0}

        source = con.execute("""
            SELECT product_id, current_price FROM products.source_products ORDER BY product_id
        """).fetchall()
        assert source == [("1001", "1.75"), ("1003", "1.10")]

        raw = ChangeStream(con, ENTITY).read_batch(net=False).records
        assert [(r.action.value, r.is_update, r.key) for r in raw] == [
            ("INSERT", False, "1001"),
            ("INSERT", False, "1002"),
            ("DELETE", True, "1001"),
            ("INSERT", True, "1001"),
            ("INSERT", False, "1003"),
            ("DELETE", False, "1002"),
        ]

        con.close()


def test_load_same_csv_twice_is_unchanged():
    with tempfile.TemporaryDirectory() as tmpdir:
        con = duckdb.connect(str(Path(tmpdir) / "test.duckdb"))
        ensure_entity_tables(con, ENTITY)
        path = _write(tmpdir, "p.csv", "Milk,1.65,,0.73/litre,Fresh Food,1001,https://x/1001\n")

        load_csv(con, ENTITY, path)
        counts = load_csv(con, ENTITY, path)

        assert counts["unchanged"] == 1
        assert counts["inserted"] == 0
        assert ChangeStream(con, ENTITY).count() == 1

        con.close()
