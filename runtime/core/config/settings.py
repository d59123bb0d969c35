"""Configuration loader for the core runtime.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from errors import ConfigError
from evaluator.constraints import EnvironmentSnapshot


@dataclass(frozen=True)
class StorageConfig:
    driver: str
    sqlite_path: Path


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    poll_interval_seconds: float = 10.0
    min_interval_seconds: float = 900.0
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 18000.0
    default_timeout_seconds: float | None = None
    max_workers: int = 4


@dataclass(frozen=True)
class DefinitionsConfig:
    definitions_dir: Path
    schemas_dir: Path


@dataclass(frozen=True)
class RuntimeConfig:
    storage: StorageConfig
    scheduler: SchedulerConfig
    definitions: DefinitionsConfig
    environment: EnvironmentSnapshot = field(default_factory=EnvironmentSnapshot)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing required config file: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config file: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ConfigError(f"scheduler.{name} must be > 0 (got {value})")
    return value


def load_scheduler_config(raw: dict[str, Any]) -> SchedulerConfig:
    timeout = raw.get("default_timeout_seconds")
    cfg = SchedulerConfig(
        enabled=bool(raw.get("enabled", True)),
        poll_interval_seconds=_positive("poll_interval_seconds", float(raw.get("poll_interval_seconds", 10))),
        min_interval_seconds=_positive("min_interval_seconds", float(raw.get("min_interval_seconds", 900))),
        backoff_base_seconds=_positive("backoff_base_seconds", float(raw.get("backoff_base_seconds", 30))),
        backoff_max_seconds=_positive("backoff_max_seconds", float(raw.get("backoff_max_seconds", 18000))),
        default_timeout_seconds=_positive("default_timeout_seconds", float(timeout)) if timeout is not None else None,
        max_workers=int(_positive("max_workers", float(raw.get("max_workers", 4)))),
    )
    if cfg.backoff_base_seconds > cfg.backoff_max_seconds:
        raise ConfigError("scheduler.backoff_base_seconds must not exceed scheduler.backoff_max_seconds")
    return cfg


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    storage_raw = raw.get("storage", {}) or {}
    scheduler_raw = raw.get("scheduler", {}) or {}
    definitions_raw = raw.get("definitions", {}) or {}
    environment_raw = raw.get("environment", {}) or {}

    driver = str(storage_raw.get("driver", "sqlite"))
    if driver != "sqlite":
        raise ConfigError(f"Unsupported storage driver: {driver}")
    sqlite_path = _resolve_path(cfg_dir, str((storage_raw.get("sqlite") or {}).get("path", "../state/schedule.sqlite")))
    storage = StorageConfig(driver=driver, sqlite_path=sqlite_path)

    definitions = DefinitionsConfig(
        definitions_dir=_resolve_path(cfg_dir, str(definitions_raw.get("definitions_dir", "../../../definitions"))),
        schemas_dir=_resolve_path(cfg_dir, str(definitions_raw.get("schemas_dir", "../../../schemas"))),
    )

    try:
        environment = EnvironmentSnapshot.from_dict(environment_raw)
    except ValueError as e:
        raise ConfigError(f"Invalid environment section in {runtime_config_path}: {e}") from e

    return RuntimeConfig(
        storage=storage,
        scheduler=load_scheduler_config(scheduler_raw),
        definitions=definitions,
        environment=environment,
    )


def default_config_paths() -> tuple[Path, Path]:
    # Default to the config files shipped beside this module.
    here = Path(__file__).resolve().parent
    return here / "runtime.yaml", here / "logging.yaml"
