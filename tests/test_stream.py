"""Tests for the change stream over the source table."""
import tempfile
from pathlib import Path

import duckdb
import pytest

from streamdim.config.models import EntityConfig
from streamdim.ctl.schema import ensure_entity_tables
from streamdim.flow.models import ChangeAction, ChangeRecord
from streamdim.flow.stream import ChangeStream, net_changes


ENTITY = EntityConfig()


def _stream(tmpdir):
    con = duckdb.connect(str(Path(tmpdir) / "test.duckdb"))
    ensure_entity_tables(con, ENTITY)
    return con, ChangeStream(con, ENTITY)


def _summary(records):
    return [(r.action.value, r.is_update, r.key, r.fields.get("product_name")) for r in records]


def test_insert_captures_insert_records():
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)

        assert not stream.has_data()
        stream.insert([
            {"product_id": "1001", "product_name": "Milk", "current_price": 1.65},
            {"product_id": "1002", "product_name": "Eggs"},
        ])

        assert stream.has_data()
        assert stream.count() == 2
        batch = stream.read_batch(net=False)
        assert _summary(batch.records) == [
            ("INSERT", False, "1001", "Milk"),
            ("INSERT", False, "1002", "Eggs"),
        ]
        assert batch.records[0].fields["current_price"] == "1.65"
        assert con.execute("SELECT COUNT(*) FROM products.source_products").fetchone()[0] == 2

        con.close()


def test_insert_existing_key_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)
        stream.insert([{"product_id": "1001", "product_name": "Milk"}])

        with pytest.raises(ValueError, match="already exist"):
            stream.insert([{"product_id": "1001", "product_name": "Milk"}])
        with pytest.raises(ValueError, match="missing product_id"):
            stream.insert([{"product_name": "No key"}])

        assert stream.count() == 1

        con.close()


def test_update_captures_flagged_pair():
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)
        stream.insert([{"product_id": "1001", "product_name": "Milk"}])

        assert stream.update("1001", {"product_name": "Oat Milk"}) is True
        assert stream.update("1001", {"product_name": "Oat Milk"}) is False

        batch = stream.read_batch(net=False)
        assert _summary(batch.records) == [
            ("INSERT", False, "1001", "Milk"),
            ("DELETE", True, "1001", "Milk"),
            ("INSERT", True, "1001", "Oat Milk"),
        ]
        with pytest.raises(ValueError, match="does not exist"):
            stream.update("9999", {"product_name": "x"})
        with pytest.raises(ValueError, match="unknown column"):
            stream.update("1001", {"colour": "white"})

        con.close()


def test_delete_captures_old_values():
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)
        stream.insert([{"product_id": "1001", "product_name": "Milk"}])
        stream.consume(stream.read_batch().high_watermark)

        assert stream.delete(["1001", "9999"]) == 1

        assert _summary(stream.read_batch().records) == [("DELETE", False, "1001", "Milk")]
        assert con.execute("SELECT COUNT(*) FROM products.source_products").fetchone()[0] == 0

        con.close()


def test_consume_up_to_watermark():
    """Changes captured after a batch was read survive its consumption."""
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)
        stream.insert([{"product_id": "1001", "product_name": "Milk"}])
        batch = stream.read_batch()

        stream.insert([{"product_id": "1002", "product_name": "Eggs"}])
        assert stream.consume(batch.high_watermark) == 1

        assert _summary(stream.read_batch().records) == [("INSERT", False, "1002", "Eggs")]
        assert stream.consume(None) == 0

        con.close()


def test_empty_stream_batch():
    with tempfile.TemporaryDirectory() as tmpdir:
        con, stream = _stream(tmpdir)

        batch = stream.read_batch()

        assert batch.records == []
        assert batch.high_watermark is None

        con.close()


def _rec(action, key, name, is_update=False):
    return ChangeRecord(key=key, fields={"product_name": name}, action=action, is_update=is_update)


I, D = ChangeAction.INSERT, ChangeAction.DELETE


@pytest.mark.parametrize("raw, expected", [
    # insert then update: one plain insert of the final values
    (
        [_rec(I, "k", "a"), _rec(D, "k", "a", True), _rec(I, "k", "b", True)],
        [("INSERT", False, "k", "b")],
    ),
    # insert then delete: nothing
    ([_rec(I, "k", "a"), _rec(D, "k", "a")], []),
    # two updates: one update pair from the original to the final values
    (
        [_rec(D, "k", "a", True), _rec(I, "k", "b", True), _rec(D, "k", "b", True), _rec(I, "k", "c", True)],
        [("DELETE", True, "k", "a"), ("INSERT", True, "k", "c")],
    ),
    # update then delete: a plain delete of the original values
    ([_rec(D, "k", "a", True), _rec(I, "k", "b", True), _rec(D, "k", "b")], [("DELETE", False, "k", "a")]),
    # update back to the original values: nothing
    (
        [_rec(D, "k", "a", True), _rec(I, "k", "b", True), _rec(D, "k", "b", True), _rec(I, "k", "a", True)],
        [],
    ),
    # delete then re-insert: an update pair
    ([_rec(D, "k", "a"), _rec(I, "k", "b")], [("DELETE", True, "k", "a"), ("INSERT", True, "k", "b")]),
])
def test_net_changes(raw, expected):
    assert _summary(net_changes(raw)) == expected


def test_net_changes_keeps_key_order():
    raw = [_rec(I, "b", "1"), _rec(I, "a", "1"), _rec(D, "c", "1")]

    assert [r.key for r in net_changes(raw)] == ["b", "a", "c"]
