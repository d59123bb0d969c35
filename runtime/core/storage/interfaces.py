"""DB-agnostic storage interfaces.

The schedule store is the only mutable shared resource in the runtime. The
scheduler loop and the resolver never mutate entries directly; every change
goes through one of the atomic per-name operations below.

Concrete drivers live in `storage/` (SQLite default).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from models import RunResult, ScheduleEntry

# fn(existing, allocate_generation) -> entry to write, or None to leave unchanged.
EntryMutation = Callable[[ScheduleEntry | None, Callable[[], int]], ScheduleEntry | None]


@dataclass(frozen=True)
class StoredEvent:
    id: int
    ts: datetime
    name: str
    generation: int | None
    event_type: str
    details: dict[str, Any]


class ScheduleStore(ABC):
    @abstractmethod
    def upsert(self, entry: ScheduleEntry) -> None:
        """Insert or replace the entry keyed by its work name."""

    @abstractmethod
    def get(self, name: str) -> ScheduleEntry:
        """Fetch an entry by name. Must raise NotFoundError if absent."""

    @abstractmethod
    def find(self, name: str) -> ScheduleEntry | None:
        """Fetch an entry by name, or None."""

    @abstractmethod
    def list_all(self) -> list[ScheduleEntry]:
        """All entries ordered by name."""

    @abstractmethod
    def list_due(self, now: datetime) -> list[ScheduleEntry]:
        """Idle entries with next_eligible_at <= now, earliest first, ties by name."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Remove an entry. Returns False when it did not exist."""

    @abstractmethod
    def delete_all(self) -> int:
        """Remove every entry. Returns the number removed."""

    @abstractmethod
    def mutate(self, name: str, fn: EntryMutation) -> ScheduleEntry | None:
        """Atomic read-modify-write of one entry; returns the entry as stored afterwards."""

    @abstractmethod
    def mark_running(self, name: str, *, generation: int, owner: str) -> bool:
        """Set the running flag if the entry is idle and still at `generation`."""

    @abstractmethod
    def mark_idle(self, name: str, *, generation: int | None = None) -> bool:
        """Clear the running flag (only at `generation` when given). Returns False when nothing matched."""

    @abstractmethod
    def record_result(
        self,
        name: str,
        *,
        generation: int,
        result: RunResult,
        next_eligible_at: datetime,
        consecutive_failures: int,
        error: str | None,
        now: datetime,
    ) -> bool:
        """Apply a run result. Returns False (and changes nothing) for stale generations."""

    @abstractmethod
    def recover_stale_running(self, *, owner: str) -> list[str]:
        """Reset running flags left by other (dead) owners. Returns the affected names."""

    @abstractmethod
    def record_event(
        self,
        *,
        name: str,
        event_type: str,
        generation: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit event for a work name (append-only)."""

    @abstractmethod
    def list_events(self, name: str, *, limit: int = 100) -> list[StoredEvent]:
        """Most recent events for a work name, newest first."""
