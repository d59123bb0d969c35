"""Tests for the scheduler wake cycle and its background loop."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

import sample_tasks
from conftest import wait_for
from config.settings import SchedulerConfig
from evaluator.constraints import ConstraintSet, EnvironmentSnapshot, NetworkClass, NetworkRequirement
from models import ConflictPolicy, Failure, RunResult, WorkDefinition
from scheduler.runner import SchedulerState
from scheduler.service import PeriodicWorkService

DAY = timedelta(hours=24)
FEED_CONSTRAINTS = ConstraintSet(network=NetworkRequirement.UNMETERED, battery_not_low=True)


class BlockingTask:
    """Task body that stays in flight until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def __call__(self):
        self.calls += 1
        self.started.set()
        self.release.wait(5)


class OverlapTracker:
    """Task body that records how many copies of itself run at once."""

    def __init__(self):
        self._lock = threading.Lock()
        self.release = threading.Event()
        self.active = 0
        self.peak = 0
        self.calls = 0

    def __call__(self):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            self.release.wait(5)
        finally:
            with self._lock:
                self.active -= 1


class TestWakeCycle:
    def test_feed_sync_runs_once_interval_elapsed_and_admissible(self, service, store, environment, clock):
        calls = []
        service.register_periodic_work("feed-sync", DAY, FEED_CONSTRAINTS, task=lambda: calls.append(1))

        assert service.scheduler.run_once().dispatched == []

        clock.advance(DAY)
        environment.update(EnvironmentSnapshot(network=NetworkClass.UNMETERED, battery_low=False))
        report = service.scheduler.run_once()
        assert report.dispatched == ["feed-sync"]
        assert service.scheduler.join_inflight(timeout=5)

        entry = store.get("feed-sync")
        assert calls == [1]
        assert entry.last_result is RunResult.SUCCESS
        assert entry.running is False
        assert entry.next_eligible_at == clock() + DAY

    def test_blocked_entry_stays_due_until_admissible(self, service, store, environment, clock):
        """Inadmissible work is neither run nor rescheduled."""
        calls = []
        service.register_periodic_work(
            "feed-sync", DAY, FEED_CONSTRAINTS, task=lambda: calls.append(1), run_immediately=True
        )
        environment.update(EnvironmentSnapshot(network=NetworkClass.METERED, battery_low=False))
        due_at = store.get("feed-sync").next_eligible_at

        for _ in range(3):
            report = service.scheduler.run_once()
            assert report.blocked == {"feed-sync": ["network"]}
            assert report.dispatched == []
            clock.advance(minutes=10)

        entry = store.get("feed-sync")
        assert calls == []
        assert entry.next_eligible_at == due_at
        assert entry.running is False
        assert [e.name for e in store.list_due(clock())] == ["feed-sync"]

        environment.update(EnvironmentSnapshot(network=NetworkClass.UNMETERED, battery_low=False))
        assert service.scheduler.run_once().dispatched == ["feed-sync"]
        service.scheduler.join_inflight(timeout=5)
        assert calls == [1]

    def test_retryable_failures_back_off_within_interval(self, service, store, clock):
        service.register_periodic_work(
            "upload", DAY, task=lambda: Failure(retryable=True, reason="503"), run_immediately=True
        )

        delays = []
        for _ in range(3):
            assert service.scheduler.run_once().dispatched == ["upload"]
            service.scheduler.join_inflight(timeout=5)
            entry = store.get("upload")
            delay = entry.next_eligible_at - clock()
            delays.append(delay.total_seconds())
            assert delay < DAY
            clock.advance(delay)

        assert delays == [30, 60, 120]
        entry = store.get("upload")
        assert entry.consecutive_failures == 3
        assert entry.run_attempt_count == 3
        assert entry.last_result is RunResult.FAILURE

    def test_success_resets_failure_streak(self, service, store, clock):
        outcomes = [Failure(retryable=True), Failure(retryable=True), None]
        service.register_periodic_work("upload", DAY, task=lambda: outcomes.pop(0), run_immediately=True)

        for _ in range(3):
            service.scheduler.run_once()
            service.scheduler.join_inflight(timeout=5)
            clock.advance(store.get("upload").next_eligible_at - clock())

        entry = store.get("upload")
        assert entry.last_result is RunResult.SUCCESS
        assert entry.consecutive_failures == 0

    def test_unbound_work_without_importable_ref_is_reported(self, service, store, clock):
        service.register_periodic_work("orphan", DAY, task=sample_tasks.refresh_feed, run_immediately=True)
        service.bindings.unbind("orphan")
        entry = store.get("orphan")
        store.upsert(entry.evolve(definition=WorkDefinition(name="orphan", interval=DAY, task_ref="sample_tasks:missing")))

        report = service.scheduler.run_once()

        assert report.unbound == ["orphan"]
        assert store.get("orphan").running is False

    def test_bindings_fall_back_to_task_ref(self, service, store):
        sample_tasks.calls.clear()
        service.register_periodic_work("feed", DAY, task=sample_tasks.refresh_feed, run_immediately=True)
        service.bindings.clear()

        assert service.scheduler.run_once().dispatched == ["feed"]
        service.scheduler.join_inflight(timeout=5)
        assert sample_tasks.calls == ["refresh_feed"]


class TestInFlight:
    def test_at_most_one_run_per_name(self, service, store, clock):
        task = BlockingTask()
        service.register_periodic_work("sync", DAY, task=task, run_immediately=True)

        assert service.scheduler.run_once().dispatched == ["sync"]
        assert task.started.wait(5)
        assert service.scheduler.is_inflight("sync")
        assert store.get("sync").running is True

        clock.advance(DAY * 2)
        assert service.scheduler.run_once().dispatched == []

        task.release.set()
        service.scheduler.join_inflight(timeout=5)
        assert task.calls == 1
        assert not service.scheduler.is_inflight("sync")

    def test_cancel_while_in_flight_discards_result(self, service, store, clock):
        task = BlockingTask()
        service.register_periodic_work("sync", DAY, task=task, run_immediately=True)
        service.scheduler.run_once()
        assert task.started.wait(5)

        service.cancel_work("sync")
        task.release.set()
        assert service.scheduler.join_inflight(timeout=5)

        assert store.find("sync") is None
        assert service.list_events("sync")[0].event_type == "stale_result_discarded"

    def test_replace_while_in_flight_discards_old_result(self, service, store, clock):
        task = BlockingTask()
        service.register_periodic_work("sync", DAY, task=task, run_immediately=True)
        service.scheduler.run_once()
        assert task.started.wait(5)

        service.register_periodic_work(
            "sync", timedelta(hours=6), policy=ConflictPolicy.REPLACE, task=sample_tasks.refresh_feed, run_immediately=True
        )
        replaced = store.get("sync")

        # The new generation is due, but the old run still holds the name.
        assert service.scheduler.run_once().skipped == ["sync"]

        task.release.set()
        service.scheduler.join_inflight(timeout=5)

        entry = store.get("sync")
        assert entry.generation == replaced.generation
        assert entry.last_result is RunResult.NEVER_RUN
        assert entry.run_attempt_count == 0
        assert entry.running is False
        assert service.scheduler.run_once().dispatched == ["sync"]

    def test_timeout_releases_entry_for_retry(self, service, store, clock):
        task = BlockingTask()
        service.register_periodic_work(
            "slow", DAY, task=task, run_immediately=True, timeout=timedelta(milliseconds=50)
        )
        try:
            service.scheduler.run_once()
            service.scheduler.join_inflight(timeout=5)
        finally:
            task.release.set()

        entry = store.get("slow")
        assert entry.last_result is RunResult.FAILURE
        assert entry.last_error == "timeout"
        assert entry.running is False
        assert entry.next_eligible_at == clock() + timedelta(seconds=30)

    def test_timed_out_body_keeps_name_in_flight_until_it_exits(self, service, store, clock):
        task = OverlapTracker()
        service.register_periodic_work(
            "slow", DAY, task=task, run_immediately=True, timeout=timedelta(milliseconds=50)
        )
        try:
            assert service.scheduler.run_once().dispatched == ["slow"]
            assert service.scheduler.join_inflight(timeout=5)

            entry = store.get("slow")
            assert entry.last_error == "timeout"
            assert entry.running is False
            assert service.scheduler.is_inflight("slow")

            # Backoff elapsed, but the first body is still running.
            clock.advance(seconds=30)
            report = service.scheduler.run_once()
            assert report.skipped == ["slow"]
            assert report.dispatched == []
        finally:
            task.release.set()

        assert wait_for(lambda: not service.scheduler.is_inflight("slow"))
        assert service.scheduler.run_once().dispatched == ["slow"]
        assert service.scheduler.join_inflight(timeout=5)
        assert task.calls == 2
        assert task.peak == 1

    def test_replace_rebinds_before_new_generation_is_visible(self, service, store):
        old_calls = []
        service.register_periodic_work("sync", DAY, task=lambda: old_calls.append(1))
        first = store.get("sync")
        assert service.bindings.generation_of("sync") == first.generation

        # A registration that commits without this service binding a body.
        sample_tasks.calls.clear()
        service.resolver.register(
            WorkDefinition(name="sync", interval=DAY, task_ref="sample_tasks:refresh_feed"),
            ConflictPolicy.REPLACE,
            run_immediately=True,
        )

        assert service.scheduler.run_once().dispatched == ["sync"]
        assert service.scheduler.join_inflight(timeout=5)
        assert old_calls == []
        assert sample_tasks.calls == ["refresh_feed"]
        assert service.bindings.generation_of("sync") == store.get("sync").generation

    def test_replace_binds_new_body_for_new_generation(self, service, store):
        old_calls = []
        service.register_periodic_work("sync", DAY, task=lambda: old_calls.append(1))
        sample_tasks.calls.clear()
        service.register_periodic_work(
            "sync", DAY, policy=ConflictPolicy.REPLACE, task=sample_tasks.refresh_feed, run_immediately=True
        )

        assert service.bindings.generation_of("sync") == store.get("sync").generation
        service.scheduler.run_once()
        assert service.scheduler.join_inflight(timeout=5)
        assert old_calls == []
        assert sample_tasks.calls == ["refresh_feed"]

    def test_keep_does_not_rebind_current_generation(self, service, store):
        first_calls = []
        service.register_periodic_work("sync", DAY, task=lambda: first_calls.append(1), run_immediately=True)
        service.register_periodic_work("sync", DAY, task=sample_tasks.refresh_feed)

        service.scheduler.run_once()
        assert service.scheduler.join_inflight(timeout=5)
        assert first_calls == [1]


class TestRecovery:
    def test_restart_clears_running_flag_of_dead_instance(self, store, environment, scheduler_config, clock):
        first = PeriodicWorkService(
            store=store, environment=environment, config=scheduler_config, clock=clock, instance_id="first"
        )
        first.register_periodic_work("sync", DAY, task=sample_tasks.refresh_feed, run_immediately=True)
        entry = store.get("sync")
        assert store.mark_running("sync", generation=entry.generation, owner="first")

        # "first" dies without finishing; a new instance opens the same database.
        second = PeriodicWorkService(
            store=store, environment=environment, config=scheduler_config, clock=clock, instance_id="second"
        )
        second.register_periodic_work("sync", DAY, task=sample_tasks.refresh_feed)

        report = second.scheduler.run_once()
        second.scheduler.join_inflight(timeout=5)

        assert report.dispatched == ["sync"]
        assert store.get("sync").last_result is RunResult.SUCCESS
        assert "recovered" in [e.event_type for e in store.list_events("sync")]
        second.stop()

    def test_recover_ignores_own_runs(self, service, store):
        task = BlockingTask()
        service.register_periodic_work("sync", DAY, task=task, run_immediately=True)
        service.scheduler.run_once()
        assert task.started.wait(5)

        assert service.scheduler.recover() == []
        assert store.get("sync").running is True

        task.release.set()
        service.scheduler.join_inflight(timeout=5)


class TestBackgroundLoop:
    def test_start_stop_idempotent(self, service):
        service.start()
        service.start()
        assert service.scheduler.state is SchedulerState.RUNNING

        service.stop()
        service.stop()
        assert service.scheduler.state is SchedulerState.STOPPED

    def test_immediate_registration_wakes_loop(self, service, store):
        service.start()
        service.register_periodic_work("now", DAY, task=sample_tasks.refresh_feed, run_immediately=True)

        assert wait_for(lambda: store.get("now").last_result is RunResult.SUCCESS)

    def test_environment_change_wakes_loop(self, service, store, environment):
        environment.update(EnvironmentSnapshot(network=NetworkClass.METERED))
        service.start()
        service.register_periodic_work(
            "feed-sync",
            DAY,
            ConstraintSet(network=NetworkRequirement.UNMETERED),
            task=sample_tasks.refresh_feed,
            run_immediately=True,
        )
        assert service.scheduler.run_once().blocked == {"feed-sync": ["network"]}

        environment.update(EnvironmentSnapshot(network=NetworkClass.UNMETERED))

        assert wait_for(lambda: store.get("feed-sync").last_result is RunResult.SUCCESS)

    def test_stop_lets_in_flight_run_finish(self, service, store):
        task = BlockingTask()
        service.start()
        service.register_periodic_work("sync", DAY, task=task, run_immediately=True)
        assert task.started.wait(5)

        service.stop()
        task.release.set()

        assert service.scheduler.join_inflight(timeout=5)
        assert store.get("sync").last_result is RunResult.SUCCESS

    def test_disabled_scheduler_does_not_start(self, store, environment, clock):
        svc = PeriodicWorkService(
            store=store, environment=environment, config=SchedulerConfig(enabled=False), clock=clock
        )
        svc.start()
        assert svc.scheduler.state is SchedulerState.STOPPED

    def test_status(self, service):
        service.register_periodic_work("feed", DAY, task=sample_tasks.refresh_feed)
        status = service.scheduler.status()

        assert status["state"] == "stopped"
        assert status["instance_id"] == "test-instance"
        assert status["bound_tasks"] == ["feed"]
        assert status["inflight"] == []


@pytest.mark.parametrize("network", [NetworkClass.NONE, NetworkClass.METERED])
def test_unmetered_work_never_runs_on_other_networks(service, store, environment, clock, network):
    service.register_periodic_work(
        "feed-sync", DAY, FEED_CONSTRAINTS, task=sample_tasks.refresh_feed, run_immediately=True
    )
    environment.update(EnvironmentSnapshot(network=network, battery_low=False))

    for _ in range(5):
        clock.advance(DAY)
        assert service.scheduler.run_once().dispatched == []

    assert store.get("feed-sync").run_attempt_count == 0
