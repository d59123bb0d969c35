"""Execution adapter: the boundary between the scheduler and task bodies.

This adapter:
- Invokes a caller-supplied task body and normalizes its outcome
  (Success | Failure(retryable))
- Enforces an optional maximum execution duration
- Applies the finished run to the schedule store via the lifecycle rules

It never inspects what a task does. Task bodies may return None or Success,
return a Failure, or raise ExecutionFailure; any other exception is a
non-retryable failure.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from config.settings import SchedulerConfig
from errors import ExecutionFailure
from executor.state_machine import plan_completion
from models import Failure, ScheduleEntry, Success, TaskResult
from storage.interfaces import ScheduleStore
from utils import utcnow

logger = logging.getLogger(__name__)

TaskBody = Callable[[], Optional[Union[Success, Failure]]]

TIMEOUT_REASON = "timeout"


@dataclass(frozen=True)
class Invocation:
    result: TaskResult
    # Body thread still alive after its timeout; None when the body has returned.
    straggler: threading.Thread | None = None


def _call(task: TaskBody, work_name: str) -> TaskResult:
    try:
        value = task()
    except ExecutionFailure as e:
        return Failure(retryable=e.retryable, reason=str(e))
    except Exception as e:
        logger.exception("task_raised", extra={"event": "task_raised", "work_name": work_name})
        return Failure(retryable=False, reason=f"{type(e).__name__}: {e}")

    if value is None:
        return Success()
    if isinstance(value, (Success, Failure)):
        return value
    logger.error(
        "task_returned_invalid_result",
        extra={"event": "task_returned_invalid_result", "work_name": work_name},
    )
    return Failure(retryable=False, reason=f"invalid task result: {type(value).__name__}")


class ExecutionAdapter:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._config = config
        self._clock = clock

    def effective_timeout(self, entry: ScheduleEntry) -> timedelta | None:
        if entry.definition.timeout is not None:
            return entry.definition.timeout
        if self._config.default_timeout_seconds is not None:
            return timedelta(seconds=self._config.default_timeout_seconds)
        return None

    def invoke(self, task: TaskBody, *, timeout: timedelta | None = None, work_name: str = "") -> TaskResult:
        return self.invoke_tracked(task, timeout=timeout, work_name=work_name).result

    def invoke_tracked(self, task: TaskBody, *, timeout: timedelta | None = None, work_name: str = "") -> Invocation:
        """Like invoke, but also hands back the body's thread when it outlived the timeout."""
        if timeout is None:
            return Invocation(result=_call(task, work_name))

        outcome: list[TaskResult] = []
        worker = threading.Thread(
            target=lambda: outcome.append(_call(task, work_name)),
            name=f"work-{work_name}",
            daemon=True,
        )
        worker.start()
        worker.join(timeout=timeout.total_seconds())
        if worker.is_alive() or not outcome:
            # The body keeps running on its daemon thread; only its result is dropped.
            logger.warning(
                "task_timed_out",
                extra={"event": "task_timed_out", "work_name": work_name, "code": TIMEOUT_REASON},
            )
            return Invocation(
                result=Failure(retryable=True, reason=TIMEOUT_REASON),
                straggler=worker if worker.is_alive() else None,
            )
        return Invocation(result=outcome[0])

    def complete(self, entry: ScheduleEntry, outcome: TaskResult, *, now: datetime | None = None) -> bool:
        """Record a finished run. Returns False when the result was stale and discarded."""
        now = now or self._clock()
        plan = plan_completion(entry, outcome, now=now, config=self._config)

        applied = self._store.record_result(
            entry.name,
            generation=entry.generation,
            result=plan.result,
            next_eligible_at=plan.next_eligible_at,
            consecutive_failures=plan.consecutive_failures,
            error=plan.error,
            now=now,
        )

        if not applied:
            logger.info(
                "stale_result_discarded",
                extra={"event": "stale_result_discarded", "work_name": entry.name, "generation": entry.generation},
            )
            self._store.record_event(
                name=entry.name,
                generation=entry.generation,
                event_type="stale_result_discarded",
                details={"result": plan.result.value},
            )
            return False

        event_type = "succeeded" if isinstance(outcome, Success) else "failed"
        details: dict[str, object] = {"result": plan.result.value}
        if isinstance(outcome, Failure):
            details.update({"retryable": outcome.retryable, "reason": plan.error})
        if plan.retry_delay_seconds is not None:
            details["retry_delay_seconds"] = plan.retry_delay_seconds

        logger.info(
            "work_finished",
            extra={
                "event": "work_finished",
                "work_name": entry.name,
                "generation": entry.generation,
                "outcome": event_type,
                "delay_seconds": plan.retry_delay_seconds,
            },
        )
        self._store.record_event(name=entry.name, generation=entry.generation, event_type=event_type, details=details)
        return True
