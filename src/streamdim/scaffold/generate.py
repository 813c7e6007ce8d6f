"""Project scaffolding and initialization for streamdim."""
from __future__ import annotations

from pathlib import Path

from streamdim.config.loader import dump_config
from streamdim.config.models import PipelineConfig
from streamdim.ctl.schema import ensure_ctl_tables, ensure_entity_tables
from streamdim.engine.duckdb import connect, resolve_uri

SAMPLE_PRODUCTS_CSV = """PRODUCT_NAME,CURRENT_PRICE,PREVIOUS_PRICE,PRICE_PER_EACH,CATEGORY,PRODUCT_ID,PRODUCT_URL
Semi Skimmed Milk 2.27L,1.65,,0.73/litre,Fresh Food,1001,https://www.example.com/products/1001
Free Range Eggs x12,3.20,3.50,0.27/each,Fresh Food,1002,https://www.example.com/products/1002
Wholemeal Bread 800g,1.10,,0.14/100g,Bakery,1003,https://www.example.com/products/1003
Cheddar Cheese 400g,3.75,4.00,0.94/100g,Fresh Food,1004,https://www.example.com/products/1004
"""


def init_project(path: Path, force: bool = False) -> None:
    """
    Initialize a new streamdim project with the default products pipeline.

    Args:
        path: Path where the project should be created
        force: If True, overwrite existing files

    Creates:
        - pipelines/products/pipeline.toml with the default configuration
        - data/ directory with a sample products CSV
        - logs/ directory for task logs
        - dw.duckdb warehouse with control and entity tables
    """
    project_path = path.resolve()

    # Create main directory if it doesn't exist
    if not project_path.exists():
        project_path.mkdir(parents=True, exist_ok=True)

    folders = [
        "pipelines/products",  # Pipeline definitions (TOML configs)
        "data",                # CSV exports to load
        "logs",                # Task logs
    ]
    for folder in folders:
        (project_path / folder).mkdir(parents=True, exist_ok=True)

    config = PipelineConfig()
    config_path = project_path / "pipelines" / "products" / "pipeline.toml"
    if not config_path.exists() or force:
        config_path.write_text(dump_config(config))

    sample_path = project_path / "data" / "sample_products.csv"
    if not sample_path.exists() or force:
        sample_path.write_text(SAMPLE_PRODUCTS_CSV)

    # Provision the warehouse; table creation is idempotent
    con = connect(resolve_uri(config.warehouse, project_path))
    try:
        ensure_ctl_tables(con)
        ensure_entity_tables(con, config.entity)
    finally:
        con.close()

    gitkeep_path = project_path / "logs" / ".gitkeep"
    if not gitkeep_path.exists():
        gitkeep_path.touch()

    gitignore_path = project_path / ".gitignore"
    if not gitignore_path.exists() or force:
        gitignore_path.write_text("""# DuckDB database files
*.duckdb
*.duckdb.wal

# Python
__pycache__/
*.py[cod]
.venv

# Logs
logs/*
!logs/.gitkeep
""")

    readme_path = project_path / "README.md"
    if not readme_path.exists() or force:
        readme_path.write_text("""# streamdim Project

This project was initialized with streamdim.

## Structure

- `pipelines/products/pipeline.toml` - Entity, reconcile and task configuration
- `data/` - CSV exports to load into the source table
- `logs/` - Task logs
- `dw.duckdb` - Warehouse (source table, change stream, history table, run_log)

## Getting Started

1. Load a CSV into the source table (changes are captured in the stream):
   ```bash
   streamdim load products data/sample_products.csv
   ```
2. Reconcile the stream into the history table:
   ```bash
   streamdim task run products --max-runs 1
   ```
3. Inspect a product's versions:
   ```bash
   streamdim history products 1001
   ```
""")
