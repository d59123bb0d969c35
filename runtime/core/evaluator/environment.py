"""Environment sources.

The runtime never reads hardware itself. The host supplies snapshots, either on
demand or by pushing a new snapshot, which notifies registered listeners so
the scheduler can wake early.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from evaluator.constraints import EnvironmentSnapshot

logger = logging.getLogger(__name__)

EnvironmentListener = Callable[[EnvironmentSnapshot], None]


class EnvironmentSource(Protocol):
    def snapshot(self) -> EnvironmentSnapshot: ...

    def add_listener(self, listener: EnvironmentListener) -> None: ...


class StaticEnvironmentSource:
    """Always reports the same snapshot (hosts with no live signals)."""

    def __init__(self, snapshot: EnvironmentSnapshot | None = None):
        self._snapshot = snapshot or EnvironmentSnapshot()

    def snapshot(self) -> EnvironmentSnapshot:
        return self._snapshot

    def add_listener(self, listener: EnvironmentListener) -> None:
        # Never changes, so listeners are never called.
        return None


class MutableEnvironmentSource:
    """Snapshot holder updated by the host; updates notify listeners."""

    def __init__(self, snapshot: EnvironmentSnapshot | None = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot or EnvironmentSnapshot()
        self._listeners: list[EnvironmentListener] = []

    def snapshot(self) -> EnvironmentSnapshot:
        with self._lock:
            return self._snapshot

    def add_listener(self, listener: EnvironmentListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def update(self, snapshot: EnvironmentSnapshot) -> None:
        with self._lock:
            changed = snapshot != self._snapshot
            self._snapshot = snapshot
            listeners = list(self._listeners)
        if not changed:
            return

        logger.info("environment_changed", extra={"event": "environment_changed"})
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("environment_listener_failed", extra={"event": "environment_listener_failed"})
