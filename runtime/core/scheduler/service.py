"""Public facade for registering, cancelling and inspecting periodic work."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from config.settings import SchedulerConfig
from errors import InvalidDefinitionError
from evaluator.constraints import ConstraintSet
from evaluator.environment import EnvironmentSource
from executor.engine import ExecutionAdapter, TaskBody
from models import ConflictPolicy, RegistrationOutcome, ScheduleEntry, WorkDefinition
from registry.definitions import DeclaredWork
from registry.resolver import PolicyResolver
from registry.tasks import TaskBindings, resolve_task_ref, task_ref_for
from scheduler.runner import Scheduler
from storage.interfaces import ScheduleStore, StoredEvent
from utils import utcnow

logger = logging.getLogger(__name__)


def _as_timedelta(value: timedelta | float | int | None, field_name: str) -> timedelta | None:
    if value is None or isinstance(value, timedelta):
        return value
    try:
        return timedelta(seconds=float(value))
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidDefinitionError(f"Work {field_name} must be a number of seconds, got {value!r}") from e


class PeriodicWorkService:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        environment: EnvironmentSource,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utcnow,
        instance_id: str | None = None,
    ):
        self.store = store
        self.environment = environment
        self.config = config
        self.bindings = TaskBindings()
        self.resolver = PolicyResolver(store=store, config=config, clock=clock)
        self.adapter = ExecutionAdapter(store=store, config=config, clock=clock)
        self.scheduler = Scheduler(
            store=store,
            environment=environment,
            adapter=self.adapter,
            bindings=self.bindings,
            config=config,
            clock=clock,
            instance_id=instance_id,
        )

    def start(self) -> None:
        self.scheduler.start()

    def stop(self, *, wait: bool = False) -> None:
        self.scheduler.stop(wait=wait)

    def register_periodic_work(
        self,
        name: str,
        interval: timedelta | float,
        constraints: ConstraintSet | None = None,
        policy: ConflictPolicy | str = ConflictPolicy.KEEP,
        task: TaskBody | None = None,
        *,
        run_immediately: bool = False,
        timeout: timedelta | float | None = None,
        task_ref: str | None = None,
    ) -> RegistrationOutcome:
        """Register named recurring work.

        Raises ConflictError (append policy, name taken) or
        InvalidDefinitionError (bad interval, name, timeout or constraints).
        Either `task` or an importable `task_ref` must be given.
        """
        if task is None and task_ref is None:
            raise TypeError("register_periodic_work() requires task or task_ref")
        if task is None:
            task = resolve_task_ref(task_ref)

        definition = WorkDefinition(
            name=name,
            interval=_as_timedelta(interval, "interval"),
            constraints=constraints if constraints is not None else ConstraintSet(),
            task_ref=task_ref or task_ref_for(task),
            timeout=_as_timedelta(timeout, "timeout"),
        )

        def bind(outcome: RegistrationOutcome, generation: int) -> None:
            if outcome is RegistrationOutcome.KEPT:
                # Existing entry wins; still bind a body if this process has none yet.
                self.bindings.bind_if_newer(name, task, generation=generation)
            else:
                self.bindings.bind(name, task, generation=generation)

        outcome = self.resolver.register(definition, policy, run_immediately=run_immediately, on_decided=bind)
        if outcome is not RegistrationOutcome.KEPT and run_immediately:
            self.scheduler.wake()
        return outcome

    def register_declared(self, declared: list[DeclaredWork]) -> dict[str, RegistrationOutcome]:
        outcomes: dict[str, RegistrationOutcome] = {}
        for work in declared:
            d = work.definition
            outcomes[d.name] = self.register_periodic_work(
                d.name,
                d.interval,
                d.constraints,
                work.policy,
                resolve_task_ref(d.task_ref),
                run_immediately=work.run_immediately,
                timeout=d.timeout,
                task_ref=d.task_ref,
            )
        return outcomes

    def cancel_work(self, name: str) -> None:
        """Remove a named schedule. No-op when absent.

        An in-flight run finishes, but its result is discarded.
        """
        removed = self.store.delete(name)
        self.bindings.unbind(name)
        if not removed:
            return
        self.store.record_event(name=name, event_type="cancelled")
        logger.info("work_cancelled", extra={"event": "work_cancelled", "work_name": name})

    def cancel_all(self) -> int:
        removed = self.store.delete_all()
        self.bindings.clear()
        logger.info("work_cancelled_all", extra={"event": "work_cancelled_all", "code": str(removed)})
        return removed

    def get_work_info(self, name: str) -> ScheduleEntry | None:
        return self.store.find(name)

    def list_work(self) -> list[ScheduleEntry]:
        return self.store.list_all()

    def list_events(self, name: str, *, limit: int = 100) -> list[StoredEvent]:
        return self.store.list_events(name, limit=limit)
