"""Pydantic models for pipeline configuration."""
from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator

from streamdim.engine.duckdb import validate_identifier

DEFAULT_ATTRIBUTE_COLUMNS = [
    "product_name",
    "current_price",
    "previous_price",
    "price_per_each",
    "category",
    "product_url",
]


class EntityConfig(BaseModel):
    """
    Names of the source table, its change stream and the versioned history
    table, plus the business key and the attribute columns they share.
    """
    name: str = "products"
    schema_name: str = Field("products", alias="schema")
    key_column: str = "product_id"
    attribute_columns: List[str] = Field(default_factory=lambda: list(DEFAULT_ATTRIBUTE_COLUMNS))
    source_table: str = "source_products"
    stream_table: str = "stream_products"
    history_table: str = "products"

    model_config = {"populate_by_name": True}

    @field_validator("name", "schema_name", "key_column", "source_table", "stream_table", "history_table")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        return validate_identifier(value)

    @field_validator("attribute_columns")
    @classmethod
    def _check_columns(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("attribute_columns must list at least one column")
        for col in value:
            validate_identifier(col, "column name")
        if len(set(value)) != len(value):
            raise ValueError("attribute_columns contains duplicates")
        return value

    @model_validator(mode="after")
    def _check_key_not_attribute(self) -> "EntityConfig":
        if self.key_column in self.attribute_columns:
            raise ValueError(f"key column '{self.key_column}' cannot also be an attribute column")
        tables = {self.source_table, self.stream_table, self.history_table}
        if len(tables) != 3:
            raise ValueError("source_table, stream_table and history_table must be distinct")
        return self

    def qualified(self, table: str) -> str:
        return f"{self.schema_name}.{table}"

    @property
    def source(self) -> str:
        return self.qualified(self.source_table)

    @property
    def stream(self) -> str:
        return self.qualified(self.stream_table)

    @property
    def history(self) -> str:
        return self.qualified(self.history_table)


class ReconcileConfig(BaseModel):
    # Leave a key alone when its current version already matches the incoming insert.
    detect_unchanged: bool = True


class TaskConfig(BaseModel):
    name: str = "task_products"
    schedule: str = "5 minute"


class PipelineConfig(BaseModel):
    """Pipeline configuration model."""
    name: str = "products"
    version: str = "0.1.0"
    warehouse: str = "duckdb://file:dw.duckdb"
    entity: EntityConfig = Field(default_factory=EntityConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    task: TaskConfig = Field(default_factory=TaskConfig)
    env: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
