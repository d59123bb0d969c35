"""Policy enforcement for work definitions and retry timing.

This module enforces *static* boundaries derived from the scheduler config:
- minimum interval (avoid thrashing the host)
- well-formed names, task refs and timeouts

and computes the bounded exponential backoff applied after retryable failures.
It never executes anything.
"""

from __future__ import annotations

from datetime import timedelta

from config.settings import SchedulerConfig
from errors import InvalidDefinitionError
from evaluator.constraints import ConstraintSet
from models import WorkDefinition

_MAX_NAME_LENGTH = 128
_BACKOFF_MARGIN = timedelta(seconds=1)
# Keeps now + interval representable.
_MAX_INTERVAL = timedelta(days=3650)


def enforce_work_definition(definition: WorkDefinition, *, config: SchedulerConfig) -> None:
    """Reject definitions the scheduler cannot honor."""
    name = definition.name
    if not isinstance(name, str) or not name.strip():
        raise InvalidDefinitionError("Work name must be a non-empty string")
    if name != name.strip():
        raise InvalidDefinitionError(f"Work name must not have surrounding whitespace: {name!r}")
    if len(name) > _MAX_NAME_LENGTH:
        raise InvalidDefinitionError(f"Work name exceeds {_MAX_NAME_LENGTH} characters")

    if not isinstance(definition.interval, timedelta):
        raise InvalidDefinitionError("Work interval must be a timedelta")
    min_interval = timedelta(seconds=config.min_interval_seconds)
    if definition.interval < min_interval:
        raise InvalidDefinitionError(
            f"Work interval {definition.interval.total_seconds():.0f}s is below the minimum "
            f"({config.min_interval_seconds:.0f}s)",
            details={"name": name, "min_interval_seconds": config.min_interval_seconds},
        )
    if definition.interval > _MAX_INTERVAL:
        raise InvalidDefinitionError(
            f"Work interval exceeds {_MAX_INTERVAL.days} days",
            details={"name": name},
        )

    if not isinstance(definition.constraints, ConstraintSet):
        raise InvalidDefinitionError("Work constraints must be a ConstraintSet")

    if not definition.task_ref:
        raise InvalidDefinitionError(f"Work {name} has no task reference")

    if definition.timeout is not None and not isinstance(definition.timeout, timedelta):
        raise InvalidDefinitionError(f"Work {name} timeout must be a timedelta")
    if definition.timeout is not None and definition.timeout <= timedelta(0):
        raise InvalidDefinitionError(f"Work {name} timeout must be positive")


def backoff_cap(interval: timedelta, *, config: SchedulerConfig) -> timedelta:
    """Largest retry delay for an interval; always strictly below the interval."""
    cap = timedelta(seconds=config.backoff_max_seconds)
    return max(timedelta(0), min(cap, interval - _BACKOFF_MARGIN))


def backoff_delay(consecutive_failures: int, interval: timedelta, *, config: SchedulerConfig) -> timedelta:
    """Capped doubling: base, 2*base, 4*base, ... for the 1st, 2nd, 3rd failure."""
    consecutive_failures = max(1, int(consecutive_failures))
    cap = backoff_cap(interval, config=config)
    # Bound the exponent so the multiplication cannot overflow timedelta.
    exponent = min(consecutive_failures - 1, 62)
    raw_seconds = config.backoff_base_seconds * (2**exponent)
    if raw_seconds >= cap.total_seconds():
        return cap
    return timedelta(seconds=raw_seconds)
