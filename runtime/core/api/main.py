"""FastAPI host surface for the periodic work runtime.

Read-only with respect to work definitions: recurring work is registered by
the host process (in code or via declarative definitions), never over HTTP.
The host may push environment changes, which wake the scheduler.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from config.logging import apply_logging_config
from config.settings import RuntimeConfig, default_config_paths, load_runtime_config
from errors import (
    ConfigError,
    ConflictError,
    InvalidDefinitionError,
    NotFoundError,
    SchemaValidationError,
    StorageError,
)
from evaluator.constraints import EnvironmentSnapshot
from evaluator.environment import MutableEnvironmentSource
from registry.definitions import load_declared_work
from registry.schema_validator import SchemaValidator
from scheduler.service import PeriodicWorkService
from storage.sqlite import SQLiteScheduleStore
from utils import format_rfc3339

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppComponents:
    config: RuntimeConfig
    service: PeriodicWorkService
    environment: MutableEnvironmentSource


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, InvalidDefinitionError):
        return {"error": "INVALID_DEFINITION", "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id}
    if isinstance(err, StorageError):
        return {"error": "STORAGE_UNAVAILABLE", "message": str(err)}
    if isinstance(err, ConfigError):
        return {"error": "CONFIG_ERROR", "message": str(err)}
    return {"error": "INTERNAL", "message": str(err)}


def build_components(runtime_config_path: Path | None = None, logging_config_path: Path | None = None) -> AppComponents:
    default_runtime, default_logging = default_config_paths()
    runtime_cfg_path = runtime_config_path or _env_path("CADENCE_RUNTIME_CONFIG") or default_runtime
    logging_cfg_path = logging_config_path or _env_path("CADENCE_LOGGING_CONFIG") or default_logging

    runtime = load_runtime_config(runtime_cfg_path)
    apply_logging_config(logging_cfg_path)

    store = SQLiteScheduleStore.open(runtime.storage.sqlite_path)
    environment = MutableEnvironmentSource(runtime.environment)
    service = PeriodicWorkService(store=store, environment=environment, config=runtime.scheduler)

    if runtime.definitions.definitions_dir.exists():
        validator = SchemaValidator.load_from_dir(runtime.definitions.schemas_dir)
        declared = load_declared_work(runtime.definitions.definitions_dir, schema_validator=validator)
        outcomes = service.register_declared(declared)
        logger.info("definitions_registered", extra={"event": "definitions_registered", "code": str(len(outcomes))})

    return AppComponents(config=runtime, service=service, environment=environment)


app = FastAPI(title="Cadence Periodic Work Runtime", version="0.1.0")


@app.on_event("startup")
def _startup() -> None:
    # Fail closed at startup if config, definitions or storage cannot be loaded.
    components = build_components()
    app.state.components = components
    components.service.start()
    logger.info("runtime_started", extra={"event": "runtime_started"})


@app.on_event("shutdown")
def _shutdown() -> None:
    components = getattr(app.state, "components", None)
    if components is not None:
        components.service.stop()
    logger.info("runtime_stopped", extra={"event": "runtime_stopped"})


@app.exception_handler(InvalidDefinitionError)
def _invalid_definition_handler(_req, exc: InvalidDefinitionError):
    return JSONResponse(status_code=422, content=_error_payload(exc))


@app.exception_handler(ConflictError)
def _conflict_handler(_req, exc: ConflictError):
    return JSONResponse(status_code=409, content=_error_payload(exc))


@app.exception_handler(NotFoundError)
def _not_found_handler(_req, exc: NotFoundError):
    return JSONResponse(status_code=404, content=_error_payload(exc))


@app.exception_handler(StorageError)
def _storage_handler(_req, exc: StorageError):
    logger.exception("storage_error", extra={"event": "storage_error"})
    return JSONResponse(status_code=503, content=_error_payload(exc))


@app.exception_handler(Exception)
def _unhandled_handler(_req, exc: Exception):
    logger.exception("unhandled_error", extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=_error_payload(exc))


def _components() -> AppComponents:
    return app.state.components


@app.get("/health")
def health() -> dict[str, Any]:
    """Health check. Returns 200 once config, storage and the scheduler are loaded."""
    return {"status": "ok", "scheduler": _components().service.scheduler.status()}


@app.get("/work")
def list_work() -> dict[str, Any]:
    entries = _components().service.list_work()
    return {"work": [e.to_dict() for e in entries]}


@app.get("/work/{name}")
def get_work(name: str) -> dict[str, Any]:
    entry = _components().service.get_work_info(name)
    if entry is None:
        raise NotFoundError("ScheduleEntry", name)
    return {"work": entry.to_dict(), "inflight": _components().service.scheduler.is_inflight(name)}


@app.get("/work/{name}/events")
def list_work_events(name: str, limit: int = 100) -> dict[str, Any]:
    events = _components().service.list_events(name, limit=max(1, min(limit, 1000)))
    return {
        "events": [
            {
                "id": ev.id,
                "ts": format_rfc3339(ev.ts),
                "generation": ev.generation,
                "event_type": ev.event_type,
                "details": ev.details,
            }
            for ev in events
        ]
    }


@app.get("/environment")
def get_environment() -> dict[str, Any]:
    return {"environment": _components().environment.snapshot().to_dict()}


@app.put("/environment")
def put_environment(environment: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        snapshot = EnvironmentSnapshot.from_dict(environment)
    except ValueError as e:
        raise InvalidDefinitionError(f"Invalid environment snapshot: {e}") from e
    _components().environment.update(snapshot)
    return {"environment": snapshot.to_dict()}
