# src/streamdim/cli.py
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import List, Optional

import duckdb
import tomli_w
import typer

from streamdim.config.loader import (
    ConfigError,
    load_pipeline_config,
    pipeline_config_path,
    print_config,
    resolve_overrides,
)
from streamdim.config.models import PipelineConfig
from streamdim.ctl.schema import drop_entity_objects, ensure_ctl_tables, ensure_entity_tables
from streamdim.engine.duckdb import connect as duck_connect, fetch_df, resolve_uri
from streamdim.flow.errors import ReconcileError
from streamdim.flow.ingest import load_csv
from streamdim.flow.runner import parse_schedule, run_schedule, run_task, schedule_to_cron
from streamdim.flow.stream import ChangeStream
from streamdim.scaffold.generate import init_project
from streamdim.util.logging import configure_logging

app = typer.Typer(no_args_is_help=True)
config_app = typer.Typer(help="inspect and validate configuration")
stream_app = typer.Typer(help="inspect the change stream")
task_app = typer.Typer(help="run and schedule reconciliation tasks")
logs_app = typer.Typer(help="view run logs")

app.add_typer(config_app, name="config")
app.add_typer(stream_app, name="stream")
app.add_typer(task_app, name="task")
app.add_typer(logs_app, name="logs")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="DEBUG|INFO|WARNING|ERROR (default: $STREAMDIM_LOG_LEVEL or WARNING)"
    ),
):
    """Capture product changes in a stream and reconcile them into SCD Type 2 history."""
    try:
        configure_logging(log_level)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level")


# --------------------------- utils -----------------------------------------
def _parse_kv(pairs: List[str]) -> dict:
    """Parse CLI --set key=val pairs into a dict with simple casting."""
    out: dict = {}
    for item in pairs:
        if "=" not in item:
            raise typer.BadParameter(
                f"Invalid --set value '{item}', expected key=value."
            )
        k, v = item.split("=", 1)
        v_strip = v.strip()
        if v_strip.lower() in ("true", "false"):
            out[k] = v_strip.lower() == "true"
        else:
            try:
                out[k] = int(v_strip)
            except ValueError:
                try:
                    out[k] = float(v_strip)
                except ValueError:
                    out[k] = v_strip
    return out


def _load_config(
    pipeline: str,
    project_dir: Path,
    env: Optional[str] = None,
    overrides: Optional[List[str]] = None,
) -> PipelineConfig:
    try:
        cfg = load_pipeline_config(pipeline_config_path(project_dir, pipeline))
        return resolve_overrides(cfg, overrides=_parse_kv(overrides or []), env=env)
    except ConfigError as e:
        typer.echo(f"❌ {e}")
        raise typer.Exit(code=1)


def _open(cfg: PipelineConfig, project_dir: Path, warehouse_uri: Optional[str]) -> duckdb.DuckDBPyConnection:
    con = duck_connect(resolve_uri(warehouse_uri or cfg.warehouse, project_dir.resolve()))
    ensure_ctl_tables(con)
    ensure_entity_tables(con, cfg.entity)
    return con


# --------------------------- top-level cmds --------------------------------
@app.command(help="Create a new streamdim project scaffold in PATH.")
def init(
    path: Path = typer.Argument(
        Path("."), exists=False, file_okay=False, dir_okay=True
    ),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing files if present."
    ),
):
    init_project(path, force=force)
    typer.echo(f"✅ project initialized at {path.resolve()}")


@app.command(help="Create the source, stream and history tables for a pipeline.")
def setup(
    pipeline: str = typer.Argument(...),
    project_dir: Path = typer.Option(Path("."), "--project-dir", help="Project root."),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse", help="duckdb://file:dw.duckdb"),
):
    cfg = _load_config(pipeline, project_dir)
    con = _open(cfg, project_dir, warehouse_uri)
    con.close()
    e = cfg.entity
    typer.echo(f"✅ provisioned {e.source}, {e.stream}, {e.history}")


@app.command(help="Load a CSV into the source table, capturing changes in the stream.")
def load(
    pipeline: str = typer.Argument(...),
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False),
    prune: bool = typer.Option(False, "--prune", help="Delete source rows missing from the CSV."),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir)
    con = _open(cfg, project_dir, warehouse_uri)
    try:
        counts = load_csv(con, cfg.entity, csv_path, prune=prune)
    except ValueError as e:
        typer.echo(f"❌ load failed: {e}")
        raise typer.Exit(code=1)
    finally:
        con.close()
    typer.echo(
        "✅ loaded: "
        + " ".join(f"{k}={v}" for k, v in counts.items())
    )


@app.command(help="Run one reconciliation pass now, even if the stream is empty.")
def reconcile(
    pipeline: str = typer.Argument(...),
    env: Optional[str] = typer.Option(None, "--env", help="Environment overlay (e.g. dev, prod)"),
    set: List[str] = typer.Option([], "--set", help="Override parameters: key=value"),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir, env, set)
    con = _open(cfg, project_dir, warehouse_uri)
    try:
        result = run_task(con, cfg, force=True)
    except ReconcileError as e:
        typer.echo(f"❌ reconciliation failed: {e}")
        raise typer.Exit(code=1)
    finally:
        con.close()
    typer.echo(f"✅ {result.summary}")
    for bad in result.stats.malformed:
        typer.echo(f" - skipped change {bad.position}: {bad.reason}")


@app.command(help="Show every version of one business key.")
def history(
    pipeline: str = typer.Argument(...),
    key: str = typer.Argument(...),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir)
    con = _open(cfg, project_dir, warehouse_uri)
    e = cfg.entity
    try:
        df = fetch_df(
            con,
            f"""
            SELECT version_key, {', '.join(e.attribute_columns)}, valid_from, valid_to, is_current
            FROM {e.history}
            WHERE {e.key_column} = ?
            ORDER BY valid_from, version_key
            """,
            [key],
        )
    finally:
        con.close()
    if df.is_empty():
        typer.echo(f"ℹ️  no versions for {e.key_column}={key}")
        raise typer.Exit(0)

    for row in df.iter_rows(named=True):
        state = "current" if row["is_current"] else f"closed {row['valid_to']}"
        attrs = " ".join(f"{col}={row[col]}" for col in e.attribute_columns if row[col] is not None)
        typer.echo(f"[{row['version_key']}] {row['valid_from']} ({state}) {attrs}")


@app.command(help="Drop the source, stream and history tables of a pipeline.")
def drop(
    pipeline: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir)
    if not yes:
        typer.confirm(f"Drop all tables of pipeline '{pipeline}'?", abort=True)
    con = duck_connect(resolve_uri(warehouse_uri or cfg.warehouse, project_dir.resolve()))
    try:
        drop_entity_objects(con, cfg.entity)
    finally:
        con.close()
    typer.echo(f"✅ dropped tables of pipeline '{pipeline}'")


# --------------------------- CONFIG ----------------------------------------
@config_app.command("show", help="Print resolved configuration for a pipeline.")
def config_show(
    pipeline: str = typer.Argument(...),
    env: Optional[str] = typer.Option(None, "--env"),
    set: List[str] = typer.Option([], "--set", help="Override parameters: key=value"),
    project_dir: Path = typer.Option(Path("."), "--project-dir", help="Project root."),
):
    print_config(_load_config(pipeline, project_dir, env, set))


@config_app.command("lint", help="Validate pipeline TOML (structure/types).")
def config_lint(
    pipeline: str = typer.Argument(...),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
):
    cfg = _load_config(pipeline, project_dir)
    try:
        parse_schedule(cfg.task.schedule)
    except ValueError as e:
        typer.echo(f"❌ config validation failed:\n{e}")
        raise typer.Exit(code=1)
    typer.echo("✅ config is valid")


# --------------------------- STREAM ----------------------------------------
@stream_app.command("count", help="Number of unconsumed changes.")
def stream_count(
    pipeline: str = typer.Argument(...),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir)
    con = _open(cfg, project_dir, warehouse_uri)
    try:
        count = ChangeStream(con, cfg.entity).count()
    finally:
        con.close()
    typer.echo(str(count))


@stream_app.command("show", help="List unconsumed changes in capture order.")
def stream_show(
    pipeline: str = typer.Argument(...),
    net: bool = typer.Option(False, "--net", help="Show the net effect per key instead of raw changes."),
    limit: int = typer.Option(50, "--limit"),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir)
    con = _open(cfg, project_dir, warehouse_uri)
    try:
        batch = ChangeStream(con, cfg.entity).read_batch(net=net)
    finally:
        con.close()
    for record in batch.records[:limit]:
        flag = " (update)" if record.is_update else ""
        typer.echo(f"[{record.change_id}] {record.action.value}{flag} {record.key} {record.fields}")


# --------------------------- TASK ------------------------------------------
@task_app.command("run", help="Reconcile whenever the stream has data, on the task schedule.")
def task_run(
    pipeline: str = typer.Argument(...),
    every: Optional[str] = typer.Option(None, "--every", help='Override the schedule, e.g. "30 seconds"'),
    max_runs: Optional[int] = typer.Option(None, "--max-runs", help="Stop after N runs."),
    env: Optional[str] = typer.Option(None, "--env"),
    set: List[str] = typer.Option([], "--set", help="Override parameters: key=value"),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    warehouse_uri: Optional[str] = typer.Option(None, "--warehouse"),
):
    cfg = _load_config(pipeline, project_dir, env, set)
    try:
        interval = parse_schedule(every or cfg.task.schedule)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--every")
    con = _open(cfg, project_dir, warehouse_uri)
    try:
        runs = run_schedule(
            con,
            cfg,
            every=interval,
            max_runs=max_runs,
            on_result=lambda result: typer.echo(f"[{result.status}] {result.summary}"),
        )
    finally:
        con.close()
    typer.echo(f"✅ {cfg.task.name}: {runs} run(s)")


@task_app.command(
    "add", help="Add/append a schedule to schedules.toml in project root."
)
def task_add(
    pipeline: str = typer.Argument(...),
    cron: Optional[str] = typer.Option(None, "--cron", help='e.g. "*/5 * * * *" (default: from task schedule)'),
    env: Optional[str] = typer.Option(None, "--env", help="Environment overlay for the scheduled run"),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
):
    cfg = _load_config(pipeline, project_dir, env)
    if cron is None:
        cron = schedule_to_cron(parse_schedule(cfg.task.schedule))

    sched_path = project_dir / "schedules.toml"
    data = {}
    if sched_path.exists():
        data = tomllib.loads(sched_path.read_text())
    entry = {"pipeline": pipeline, "task": cfg.task.name, "cron": cron}
    if env is not None:
        entry["env"] = env
    data.setdefault("schedules", []).append(entry)
    sched_path.write_text(tomli_w.dumps(data))
    typer.echo(f"✅ schedule added to {sched_path}")


@task_app.command("export", help="Export crontab lines for all schedules.")
def task_export_cron(
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
    log_path: Path = typer.Option(Path("logs/cron.log"), "--log"),
):
    sched_path = project_dir / "schedules.toml"
    if not sched_path.exists():
        typer.echo("ℹ️  no schedules.toml found.")
        raise typer.Exit(0)
    data = tomllib.loads(sched_path.read_text())
    typer.echo("# Add the following lines to your crontab:")
    for s in data.get("schedules", []):
        env_opt = f" --env {s['env']}" if s.get("env") else ""
        typer.echo(
            f"""{s['cron']} cd {project_dir.resolve()} && streamdim task run {s['pipeline']}{env_opt} --max-runs 1 >> {log_path} 2>&1"""
        )


# --------------------------- LOGS ------------------------------------------
@logs_app.command("tail", help="Tail recent task runs from the run_log table.")
def logs_tail(
    pipeline: Optional[str] = typer.Option(None, "--pipeline"),
    limit: int = typer.Option(50, "--limit"),
    warehouse_uri: str = typer.Option("duckdb://file:dw.duckdb", "--warehouse"),
    project_dir: Path = typer.Option(Path("."), "--project-dir"),
):
    con = duck_connect(resolve_uri(warehouse_uri, project_dir.resolve()))
    ensure_ctl_tables(con)
    where, params = "WHERE 1=1", []
    if pipeline:
        where += " AND pipeline = ?"
        params.append(pipeline)
    df = fetch_df(
        con,
        f"""
        SELECT started_at, pipeline, step, entity, status,
               rows_in, rows_closed, rows_inserted, rows_malformed, error_message
        FROM run_log
        {where}
        ORDER BY started_at DESC, run_id DESC
        LIMIT {int(limit)}
        """,
        params,
    )
    con.close()
    for row in df.iter_rows(named=True):
        typer.echo(
            f"[{row['started_at']}] {row['pipeline']}.{row['step']} "
            f"{'(' + row['entity'] + ')' if row['entity'] else ''} "
            f"- {row['status']} ri={row['rows_in']} closed={row['rows_closed']} "
            f"inserted={row['rows_inserted']} malformed={row['rows_malformed']} "
            f"{'err=' + (row['error_message'] or '') if row['error_message'] else ''}"
        )


# --------------------------- entrypoint ------------------------------------
def app_main():
    app()


if __name__ == "__main__":
    app_main()
