"""Schedule entry lifecycle.

Per entry:
idle -> running -> idle

A finished run moves the entry back to idle and fixes its next eligible time:
- success: now + interval, failure streak reset
- retryable failure: now + backoff(streak), always sooner than the interval
- non-retryable failure: now + interval (scheduled like success, recorded as failure)

The store applies the transition atomically and refuses it for a stale
generation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from config.settings import SchedulerConfig
from executor.policy import backoff_delay
from models import Failure, RunResult, ScheduleEntry, Success, TaskResult


@dataclass(frozen=True)
class Completion:
    result: RunResult
    next_eligible_at: datetime
    consecutive_failures: int
    error: str | None = None
    retry_delay_seconds: float | None = None


def plan_completion(entry: ScheduleEntry, outcome: TaskResult, *, now: datetime, config: SchedulerConfig) -> Completion:
    """Return the bookkeeping for a finished run of `entry`."""
    interval = entry.definition.interval

    if isinstance(outcome, Success):
        return Completion(result=RunResult.SUCCESS, next_eligible_at=now + interval, consecutive_failures=0)

    if not isinstance(outcome, Failure):
        raise TypeError(f"Unknown task result: {outcome!r}")

    error = outcome.reason or "failure"
    if not outcome.retryable:
        return Completion(
            result=RunResult.FAILURE,
            next_eligible_at=now + interval,
            consecutive_failures=0,
            error=error,
        )

    streak = entry.consecutive_failures + 1
    delay = backoff_delay(streak, interval, config=config)
    return Completion(
        result=RunResult.FAILURE,
        next_eligible_at=now + delay,
        consecutive_failures=streak,
        error=error,
        retry_delay_seconds=delay.total_seconds(),
    )
