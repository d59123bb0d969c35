"""Declarative periodic work definitions.

Hosts may declare their recurring work as YAML documents instead of calling
the registration API in code:

    kind: PeriodicWorkDefinition
    metadata:
      name: feed-sync
    spec:
      interval_seconds: 86400
      conflict_policy: keep
      task: "myapp.tasks:refresh_feed"
      constraints:
        network: unmetered
        battery_not_low: true

Documents are schema-validated, then converted into WorkDefinitions that go
through the normal registration path (and its conflict policy).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from errors import ConfigError
from evaluator.constraints import ConstraintSet
from models import ConflictPolicy, WorkDefinition
from registry.loader import iter_yaml_files, load_yaml_document
from registry.schema_validator import SchemaValidator
from utils import deep_get

KIND = "PeriodicWorkDefinition"


@dataclass(frozen=True)
class DeclaredWork:
    definition: WorkDefinition
    policy: ConflictPolicy
    run_immediately: bool
    path: Path


def declared_work_from_document(doc: dict[str, Any], *, path: Path) -> DeclaredWork:
    spec = deep_get(doc, ["spec"])
    timeout = spec.get("timeout_seconds")
    definition = WorkDefinition(
        name=str(deep_get(doc, ["metadata", "name"])),
        interval=timedelta(seconds=float(spec["interval_seconds"])),
        constraints=ConstraintSet.from_dict(spec.get("constraints")),
        task_ref=str(spec["task"]),
        timeout=timedelta(seconds=float(timeout)) if timeout is not None else None,
    )
    return DeclaredWork(
        definition=definition,
        policy=ConflictPolicy(spec.get("conflict_policy", ConflictPolicy.KEEP.value)),
        run_immediately=bool(spec.get("run_immediately", False)),
        path=path,
    )


def load_declared_work(definitions_dir: Path, *, schema_validator: SchemaValidator) -> list[DeclaredWork]:
    declared: dict[str, DeclaredWork] = {}
    for p in iter_yaml_files(definitions_dir):
        doc = load_yaml_document(p)
        if doc.kind != KIND:
            continue
        schema_validator.validate(KIND, doc.data)
        work = declared_work_from_document(doc.data, path=p.resolve())

        name = work.definition.name
        if name in declared:
            raise ConfigError(f"Duplicate {KIND} name: {name} ({declared[name].path} and {p})")
        declared[name] = work

    return [declared[name] for name in sorted(declared)]
