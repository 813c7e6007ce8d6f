"""CSV import into an entity's source table."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import polars as pl

from streamdim.config.models import EntityConfig
from streamdim.flow.stream import ChangeStream

logger = logging.getLogger(__name__)


def read_source_csv(path: Path, entity: EntityConfig) -> pl.DataFrame:
    """
    Read a product CSV the way the source table expects it.

    - header row skipped, comma delimited, no quote character
    - every column read as text, surrounding whitespace trimmed
    - headers lower-cased so ``PRODUCT_ID`` matches ``product_id``
    - undecodable bytes replaced rather than failing the load

    Columns the entity does not know are dropped; missing ones become null.
    """
    df = pl.read_csv(
        path,
        has_header=True,
        separator=",",
        quote_char=None,
        infer_schema=False,
        encoding="utf8-lossy",
        truncate_ragged_lines=True,
    )
    df = df.rename({col: col.strip().lower() for col in df.columns})

    wanted = [entity.key_column, *entity.attribute_columns]
    if entity.key_column not in df.columns:
        raise ValueError(f"{path}: no '{entity.key_column}' column")
    df = df.with_columns([
        pl.lit(None, dtype=pl.Utf8).alias(col) for col in wanted if col not in df.columns
    ])
    return df.select([
        pl.col(col).str.strip_chars().alias(col) for col in wanted
    ])


def load_csv(con: Any, entity: EntityConfig, path: Path, prune: bool = False) -> Dict[str, int]:
    """
    Load a CSV into the source table through the change stream.

    New keys are inserted, changed rows updated, identical rows left alone.
    Rows without a key are skipped (the load continues). With ``prune`` the
    keys missing from the file are deleted from the source.

    Returns:
        Counts of inserted, updated, unchanged, deleted and skipped rows
    """
    df = read_source_csv(path, entity)
    stream = ChangeStream(con, entity)
    counts = {"inserted": 0, "updated": 0, "unchanged": 0, "deleted": 0, "skipped": 0}

    existing = {
        row[0]: dict(zip(entity.attribute_columns, row[1:]))
        for row in con.execute(
            f"SELECT {entity.key_column}, {', '.join(entity.attribute_columns)} FROM {entity.source}"
        ).fetchall()
    }

    new_rows = []
    seen = set()
    for row in df.iter_rows(named=True):
        key = row[entity.key_column]
        if not key:
            counts["skipped"] += 1
            continue
        if key in seen:
            logger.warning("%s: duplicate %s '%s', keeping the first row", path, entity.key_column, key)
            counts["skipped"] += 1
            continue
        seen.add(key)

        values = {col: row[col] for col in entity.attribute_columns}
        if key not in existing:
            new_rows.append({entity.key_column: key, **values})
        elif stream.update(key, values):
            counts["updated"] += 1
        else:
            counts["unchanged"] += 1

    counts["inserted"] = stream.insert(new_rows)
    if prune:
        counts["deleted"] = stream.delete(sorted(set(existing) - seen))

    logger.info("Loaded %s into %s: %s", path, entity.source, counts)
    return counts
