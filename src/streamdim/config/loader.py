"""Configuration loader for streamdim pipelines."""
from __future__ import annotations

import copy
import logging
import tomllib
from pathlib import Path
from typing import Any, Optional

import tomli_w
from pydantic import ValidationError
from rich import print as rprint

from streamdim.config.models import PipelineConfig

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a pipeline configuration cannot be read or validated."""


def pipeline_config_path(project_dir: Path, pipeline: str) -> Path:
    return project_dir / "pipelines" / pipeline / "pipeline.toml"


def load_pipeline_config(config_path: Path) -> PipelineConfig:
    """
    Load and parse a pipeline configuration file.

    Args:
        config_path: Path to the pipeline TOML configuration file

    Returns:
        Parsed PipelineConfig object

    Raises:
        ConfigError: If the file is missing, is not valid TOML, or fails validation
    """
    if not config_path.exists():
        raise ConfigError(f"Pipeline config not found at {config_path}")
    try:
        data = tomllib.loads(config_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{config_path}: invalid TOML: {exc}") from exc
    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc
    logger.debug("Loaded pipeline config %s from %s", config.name, config_path)
    return config


def _deep_merge(base: dict, overlay: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_overrides(
    config: PipelineConfig,
    overrides: dict[str, Any],
    env: Optional[str] = None
) -> PipelineConfig:
    """
    Apply runtime overrides to a pipeline configuration.

    The environment overlay (the ``[env.<name>]`` table of the config) is merged
    first, then each override. Override keys may be dotted to reach nested
    sections, e.g. ``reconcile.detect_unchanged``.

    Args:
        config: Base pipeline configuration
        overrides: Dictionary of override values
        env: Environment name (e.g., 'dev', 'prod')

    Returns:
        Updated PipelineConfig object
    """
    data = config.model_dump(by_alias=True)
    if env:
        if env not in config.env:
            raise ConfigError(
                f"Unknown environment '{env}' (known: {', '.join(sorted(config.env)) or 'none'})"
            )
        data = _deep_merge(data, config.env[env])

    for dotted, value in overrides.items():
        target = data
        parts = dotted.split(".")
        for part in parts[:-1]:
            node = target.get(part)
            if not isinstance(node, dict):
                raise ConfigError(f"Cannot override '{dotted}': '{part}' is not a section")
            target = node
        target[parts[-1]] = value

    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def dump_config(config: PipelineConfig) -> str:
    """Render a configuration as TOML text."""
    return tomli_w.dumps(config.model_dump(by_alias=True))


def print_config(config: PipelineConfig) -> None:
    """
    Pretty-print a pipeline configuration.

    Args:
        config: Pipeline configuration to print
    """
    rprint(config.model_dump(by_alias=True))
