"""Value types shared by the store, resolver, scheduler and executor."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Union

from evaluator.constraints import ConstraintSet
from utils import format_rfc3339, seconds


class ConflictPolicy(str, Enum):
    KEEP = "keep"
    REPLACE = "replace"
    APPEND = "append"


class RegistrationOutcome(str, Enum):
    CREATED = "created"
    KEPT = "kept"
    REPLACED = "replaced"


class RunResult(str, Enum):
    NEVER_RUN = "never_run"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class Failure:
    retryable: bool = True
    reason: str | None = None


TaskResult = Union[Success, Failure]


@dataclass(frozen=True)
class WorkDefinition:
    name: str
    interval: timedelta
    constraints: ConstraintSet = field(default_factory=ConstraintSet)
    task_ref: str = ""
    timeout: timedelta | None = None


@dataclass(frozen=True)
class ScheduleEntry:
    definition: WorkDefinition
    next_eligible_at: datetime
    generation: int
    last_result: RunResult = RunResult.NEVER_RUN
    running: bool = False
    running_owner: str | None = None
    consecutive_failures: int = 0
    run_attempt_count: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def name(self) -> str:
        return self.definition.name

    def evolve(self, **changes: Any) -> "ScheduleEntry":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        d = self.definition
        return {
            "name": d.name,
            "interval_seconds": seconds(d.interval),
            "constraints": d.constraints.to_dict(),
            "task_ref": d.task_ref,
            "timeout_seconds": seconds(d.timeout) if d.timeout is not None else None,
            "next_eligible_at": format_rfc3339(self.next_eligible_at),
            "generation": self.generation,
            "last_result": self.last_result.value,
            "running": self.running,
            "consecutive_failures": self.consecutive_failures,
            "run_attempt_count": self.run_attempt_count,
            "last_run_at": format_rfc3339(self.last_run_at) if self.last_run_at else None,
            "last_error": self.last_error,
            "created_at": format_rfc3339(self.created_at) if self.created_at else None,
            "updated_at": format_rfc3339(self.updated_at) if self.updated_at else None,
        }
