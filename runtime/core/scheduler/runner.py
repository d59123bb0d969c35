"""Scheduler loop.

One loop thread per scheduler instance. Each wake (poll cadence, environment
change, or an explicit wake) does:

1. snapshot the environment once for the whole cycle
2. list due entries (earliest first, ties by name)
3. per entry: skip if already in flight or its task body cannot be
   resolved; keep it due if its constraints are not met; otherwise mark it
   running and hand it to the worker pool

Inadmissible entries are not rescheduled: they stay due and are retried on
the next wake. Storage failures are logged and never kill the loop.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from config.settings import SchedulerConfig
from errors import StorageError
from evaluator.constraints import blocking_constraints
from evaluator.environment import EnvironmentSource
from executor.engine import ExecutionAdapter, TaskBody
from models import ScheduleEntry
from registry.tasks import TaskBindings
from storage.interfaces import ScheduleStore
from utils import utcnow

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class WakeReport:
    at: datetime
    dispatched: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    unbound: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: str | None = None


class Scheduler:
    def __init__(
        self,
        *,
        store: ScheduleStore,
        environment: EnvironmentSource,
        adapter: ExecutionAdapter,
        bindings: TaskBindings,
        config: SchedulerConfig,
        clock: Callable[[], datetime] = utcnow,
        instance_id: str | None = None,
    ):
        self._store = store
        self._environment = environment
        self._adapter = adapter
        self._bindings = bindings
        self._config = config
        self._clock = clock
        self.instance_id = instance_id or uuid.uuid4().hex

        self._state = SchedulerState.STOPPED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._inflight: set[str] = set()
        self._futures: set[Future] = set()
        self._inflight_lock = threading.Lock()
        # (name, generation) whose running flag could not be cleared yet.
        self._pending_idle: set[tuple[str, int]] = set()
        self._recovered = False

        environment.add_listener(lambda _snapshot: self.notify_environment_changed())

    @property
    def state(self) -> SchedulerState:
        return self._state

    # Lifecycle

    def start(self) -> None:
        with self._state_lock:
            if self._state is SchedulerState.RUNNING:
                return
            if not self._config.enabled:
                logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
                return

            self.recover()
            self._stop.clear()
            self._ensure_executor()
            self._thread = threading.Thread(target=self._loop, name="cadence-scheduler", daemon=True)
            self._thread.start()
            self._state = SchedulerState.RUNNING
        logger.info("scheduler_started", extra={"event": "scheduler_started", "code": self.instance_id})

    def stop(self, *, wait: bool = False, timeout: float = 5.0) -> None:
        """Stop admitting work. In-flight executions are allowed to finish."""
        with self._state_lock:
            was_running = self._state is SchedulerState.RUNNING
            self._state = SchedulerState.STOPPED
            self._stop.set()
            self._wake.set()
            thread, self._thread = self._thread, None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

        # Manual run_once calls may have created a pool while stopped.
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        if was_running:
            logger.info("scheduler_stopped", extra={"event": "scheduler_stopped"})

    def wake(self) -> None:
        self._wake.set()

    def notify_environment_changed(self) -> None:
        self.wake()

    def recover(self) -> list[str]:
        """Reset running flags inherited from a previous process instance."""
        names = self._store.recover_stale_running(owner=self.instance_id)
        for name in names:
            logger.warning("stale_running_flag_reset", extra={"event": "stale_running_flag_reset", "work_name": name})
            self._store.record_event(name=name, event_type="recovered", details={"owner": self.instance_id})
        self._recovered = True
        return names

    # Wake cycle

    def run_once(self, now: datetime | None = None) -> WakeReport:
        now = now or self._clock()

        if not self._recovered:
            try:
                self.recover()
            except StorageError as e:
                logger.exception("scheduler_recovery_failed", extra={"event": "scheduler_recovery_failed"})
                return WakeReport(at=now, error=str(e))

        self._retry_pending_idle()
        snapshot = self._environment.snapshot()

        try:
            due = self._store.list_due(now)
        except StorageError as e:
            logger.exception("scheduler_list_due_failed", extra={"event": "scheduler_list_due_failed"})
            return WakeReport(at=now, error=str(e))

        report = WakeReport(at=now)
        # A stop() landing mid-wake ends admission; manual wakes of a stopped scheduler still admit.
        stopped_before_wake = self._stop.is_set()
        for entry in due:
            if self._stop.is_set() and not stopped_before_wake:
                break
            name = entry.name
            if self.is_inflight(name):
                report.skipped.append(name)
                continue

            task = self._bindings.resolve(entry)
            if task is None:
                report.unbound.append(name)
                continue

            blockers = blocking_constraints(entry.definition.constraints, snapshot)
            if blockers:
                # Environmental; stays due and is retried next wake.
                report.blocked[name] = blockers
                logger.debug(
                    "work_blocked",
                    extra={"event": "work_blocked", "work_name": name, "blocked_by": blockers},
                )
                continue

            try:
                marked = self._store.mark_running(name, generation=entry.generation, owner=self.instance_id)
            except StorageError:
                logger.exception("work_mark_running_failed", extra={"event": "work_mark_running_failed", "work_name": name})
                report.skipped.append(name)
                continue
            if not marked:
                # Replaced, cancelled or claimed since list_due.
                report.skipped.append(name)
                continue

            if self._dispatch(entry, task):
                report.dispatched.append(name)
            else:
                report.skipped.append(name)

        return report

    def is_inflight(self, name: str) -> bool:
        with self._inflight_lock:
            return name in self._inflight

    def inflight(self) -> list[str]:
        with self._inflight_lock:
            return sorted(self._inflight)

    def join_inflight(self, timeout: float | None = None) -> bool:
        """Wait for dispatched executions. Returns True when none remain."""
        with self._inflight_lock:
            futures = set(self._futures)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "instance_id": self.instance_id,
            "inflight": self.inflight(),
            "bound_tasks": self._bindings.names(),
            "poll_interval_seconds": self._config.poll_interval_seconds,
        }

    # Internal helpers

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            try:
                self.run_once()
            except Exception:
                logger.exception("scheduler_wake_failed", extra={"event": "scheduler_wake_failed"})
            self._wake.wait(timeout=self._config.poll_interval_seconds)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._config.max_workers,
                    thread_name_prefix="cadence-work",
                )
            return self._executor

    def _dispatch(self, entry: ScheduleEntry, task: TaskBody) -> bool:
        with self._inflight_lock:
            self._inflight.add(entry.name)

        # Must precede any result event for this run.
        try:
            self._store.record_event(name=entry.name, generation=entry.generation, event_type="dispatched")
        except StorageError:
            logger.exception("work_event_failed", extra={"event": "work_event_failed", "work_name": entry.name})

        try:
            future = self._ensure_executor().submit(self._execute, entry, task)
        except RuntimeError:
            # Executor shut down between admission and submit.
            logger.warning("work_dispatch_rejected", extra={"event": "work_dispatch_rejected", "work_name": entry.name})
            with self._inflight_lock:
                self._inflight.discard(entry.name)
            self._release(entry)
            return False

        with self._inflight_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

        logger.info(
            "work_dispatched",
            extra={"event": "work_dispatched", "work_name": entry.name, "generation": entry.generation},
        )
        return True

    def _forget_future(self, future: Future) -> None:
        with self._inflight_lock:
            self._futures.discard(future)

    def _execute(self, entry: ScheduleEntry, task: TaskBody) -> None:
        recorded = False
        straggler: threading.Thread | None = None
        try:
            invocation = self._adapter.invoke_tracked(
                task, timeout=self._adapter.effective_timeout(entry), work_name=entry.name
            )
            straggler = invocation.straggler
            self._adapter.complete(entry, invocation.result)
            recorded = True
        except StorageError:
            logger.exception("work_result_not_recorded", extra={"event": "work_result_not_recorded", "work_name": entry.name})
        except Exception:
            logger.exception("work_execution_crashed", extra={"event": "work_execution_crashed", "work_name": entry.name})
        finally:
            if not recorded:
                self._release(entry)
            if straggler is not None and straggler.is_alive():
                self._hold_until_exit(entry.name, straggler)
            else:
                with self._inflight_lock:
                    self._inflight.discard(entry.name)

    def _hold_until_exit(self, name: str, body: threading.Thread) -> None:
        """Keep `name` in flight until a timed-out body has actually returned."""
        logger.warning("work_body_still_running", extra={"event": "work_body_still_running", "work_name": name})

        def watch() -> None:
            body.join()
            with self._inflight_lock:
                self._inflight.discard(name)
            logger.info("work_body_exited", extra={"event": "work_body_exited", "work_name": name})
            self.wake()

        threading.Thread(target=watch, name=f"cadence-hold-{name}", daemon=True).start()

    def _release(self, entry: ScheduleEntry) -> None:
        try:
            self._store.mark_idle(entry.name, generation=entry.generation)
        except StorageError:
            logger.exception("work_mark_idle_failed", extra={"event": "work_mark_idle_failed", "work_name": entry.name})
            with self._inflight_lock:
                self._pending_idle.add((entry.name, entry.generation))

    def _retry_pending_idle(self) -> None:
        with self._inflight_lock:
            pending, self._pending_idle = self._pending_idle, set()
        for name, generation in sorted(pending):
            try:
                self._store.mark_idle(name, generation=generation)
            except StorageError:
                with self._inflight_lock:
                    self._pending_idle.add((name, generation))
