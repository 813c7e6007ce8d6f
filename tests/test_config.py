"""Tests for pipeline configuration loading."""
import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from streamdim.config.loader import ConfigError, dump_config, load_pipeline_config, resolve_overrides
from streamdim.config.models import EntityConfig, PipelineConfig


CONFIG = """
name = "products"
warehouse = "duckdb://file:dw.duckdb"

[entity]
schema = "bronze_products"
key_column = "product_id"
attribute_columns = ["product_name", "current_price"]

[reconcile]
detect_unchanged = true

[task]
name = "task_products"
schedule = "5 minute"

[env.dev]
warehouse = "duckdb://file:dev.duckdb"

[env.dev.task]
schedule = "30 seconds"
"""


def _write(tmpdir, text):
    path = Path(tmpdir) / "pipeline.toml"
    path.write_text(text)
    return path


def test_load_pipeline_config():
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = load_pipeline_config(_write(tmpdir, CONFIG))

        assert cfg.entity.schema_name == "bronze_products"
        assert cfg.entity.attribute_columns == ["product_name", "current_price"]
        assert cfg.entity.history == "bronze_products.products"
        assert cfg.entity.stream == "bronze_products.stream_products"
        assert cfg.task.schedule == "5 minute"


def test_env_overlay_and_overrides():
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = load_pipeline_config(_write(tmpdir, CONFIG))

        resolved = resolve_overrides(
            cfg, overrides={"reconcile.detect_unchanged": False, "name": "p2"}, env="dev"
        )

        assert resolved.warehouse == "duckdb://file:dev.duckdb"
        assert resolved.task.schedule == "30 seconds"
        assert resolved.task.name == "task_products"
        assert resolved.reconcile.detect_unchanged is False
        assert resolved.name == "p2"
        assert resolved.entity.schema_name == "bronze_products"
        # the base config is untouched
        assert cfg.warehouse == "duckdb://file:dw.duckdb"


def test_unknown_env_and_bad_override():
    cfg = PipelineConfig()

    with pytest.raises(ConfigError, match="Unknown environment"):
        resolve_overrides(cfg, overrides={}, env="prod")
    with pytest.raises(ConfigError, match="not a section"):
        resolve_overrides(cfg, overrides={"name.sub": 1})


def test_missing_and_invalid_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ConfigError, match="not found"):
            load_pipeline_config(Path(tmpdir) / "nope.toml")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_pipeline_config(_write(tmpdir, "name = "))
        with pytest.raises(ConfigError, match="key_column"):
            load_pipeline_config(_write(tmpdir, '[entity]\nkey_column = "drop table;"\n'))


@pytest.mark.parametrize("kwargs", [
    {"key_column": "product_name"},
    {"attribute_columns": []},
    {"attribute_columns": ["a", "a"]},
    {"history_table": "source_products"},
    {"schema": "1bad"},
])
def test_entity_config_rejects(kwargs):
    with pytest.raises(ValidationError):
        EntityConfig(**kwargs)


def test_dump_config_round_trips():
    with tempfile.TemporaryDirectory() as tmpdir:
        cfg = PipelineConfig()

        loaded = load_pipeline_config(_write(tmpdir, dump_config(cfg)))

        assert loaded == cfg
