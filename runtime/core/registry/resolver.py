"""Deduplication of named periodic work.

Registration of an existing name is decided by the declared conflict policy:
- keep: leave the existing entry untouched (idempotent re-registration)
- replace: install the new definition under a strictly greater generation;
  an in-flight run of the old generation finishes but its result is dropped
- append: reject with ConflictError (duplicate registration is a caller bug)

A new name always gets a fresh entry, first run deferred by one interval
unless an immediate first run is requested.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from config.settings import SchedulerConfig
from errors import ConflictError, InvalidDefinitionError
from executor.policy import enforce_work_definition
from models import ConflictPolicy, RegistrationOutcome, ScheduleEntry, WorkDefinition
from storage.interfaces import ScheduleStore
from utils import utcnow

logger = logging.getLogger(__name__)


class PolicyResolver:
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

    def register(
        self,
        definition: WorkDefinition,
        policy: ConflictPolicy | str = ConflictPolicy.KEEP,
        *,
        run_immediately: bool = False,
        on_decided: Callable[[RegistrationOutcome, int], None] | None = None,
    ) -> RegistrationOutcome:
        """Apply `policy` to `definition` and persist the outcome.

        `on_decided` runs inside the store transaction with the outcome and the
        generation that will be stored, before any wake can observe it.
        """
        enforce_work_definition(definition, config=self._config)
        try:
            policy = ConflictPolicy(policy)
        except ValueError as e:
            raise InvalidDefinitionError(f"Unknown conflict policy: {policy!r}") from e
        now = self._clock()

        decided: list[RegistrationOutcome] = []
        previous: list[int] = []

        def fresh_entry(generation: int) -> ScheduleEntry:
            first_run = now if run_immediately else now + definition.interval
            return ScheduleEntry(
                definition=definition,
                next_eligible_at=first_run,
                generation=generation,
                created_at=now,
                updated_at=now,
            )

        def settle(outcome: RegistrationOutcome, generation: int) -> None:
            decided.append(outcome)
            if on_decided is not None:
                on_decided(outcome, generation)

        def decide(existing: ScheduleEntry | None, allocate_generation: Callable[[], int]) -> ScheduleEntry | None:
            if existing is None:
                entry = fresh_entry(allocate_generation())
                settle(RegistrationOutcome.CREATED, entry.generation)
                return entry
            if policy is ConflictPolicy.KEEP:
                settle(RegistrationOutcome.KEPT, existing.generation)
                return None
            if policy is ConflictPolicy.APPEND:
                raise ConflictError(
                    f"Periodic work already registered: {definition.name}",
                    details={"name": definition.name, "generation": existing.generation},
                )
            previous.append(existing.generation)
            entry = fresh_entry(allocate_generation())
            settle(RegistrationOutcome.REPLACED, entry.generation)
            return entry

        stored = self._store.mutate(definition.name, decide)
        outcome = decided[0]
        generation = stored.generation if stored is not None else None

        details: dict[str, object] = {"policy": policy.value, "run_immediately": bool(run_immediately)}
        if previous:
            details["previous_generation"] = previous[0]
        self._store.record_event(name=definition.name, generation=generation, event_type=outcome.value, details=details)
        logger.info(
            "work_registered",
            extra={
                "event": "work_registered",
                "work_name": definition.name,
                "generation": generation,
                "outcome": outcome.value,
            },
        )
        return outcome
