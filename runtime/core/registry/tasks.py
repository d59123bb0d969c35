"""Task references and in-process task bindings.

A schedule entry persists only a task reference string. The live callable is
bound in-process at registration time; after a restart the reference is
resolved by import ("package.module:attr") if the host has not re-registered
the work yet.
"""

from __future__ import annotations

import importlib
import logging
import threading
from typing import Any, Callable

from errors import InvalidDefinitionError
from models import ScheduleEntry

logger = logging.getLogger(__name__)


def task_ref_for(task: Callable[..., Any]) -> str:
    if not callable(task):
        raise InvalidDefinitionError(f"Task must be callable, got {type(task).__name__}")
    module = getattr(task, "__module__", None) or type(task).__module__
    qualname = getattr(task, "__qualname__", None) or type(task).__qualname__
    return f"{module}:{qualname}"


def resolve_task_ref(ref: str) -> Callable[..., Any]:
    """Import the callable named by `ref` ("module:attr.attr")."""
    module_name, sep, attr_path = ref.partition(":")
    if not sep or not module_name or not attr_path:
        raise InvalidDefinitionError(f"Invalid task reference (expected 'module:attr'): {ref!r}")
    if "<locals>" in attr_path or "<lambda>" in attr_path:
        raise InvalidDefinitionError(f"Task reference is not importable: {ref!r}")

    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise InvalidDefinitionError(f"Cannot import task module {module_name!r}: {e}") from e

    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise InvalidDefinitionError(f"Task reference {ref!r} not found") from e

    if not callable(obj):
        raise InvalidDefinitionError(f"Task reference {ref!r} is not callable")
    return obj


class TaskBindings:
    """Thread-safe map of work name -> (generation, task body).

    A binding only serves the schedule generation it was installed for, so a
    wake that reads a freshly replaced entry never runs the previous body.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, tuple[int, Callable[..., Any]]] = {}

    def bind(self, name: str, task: Callable[..., Any], *, generation: int) -> None:
        with self._lock:
            self._tasks[name] = (generation, task)

    def bind_if_newer(self, name: str, task: Callable[..., Any], *, generation: int) -> bool:
        """Bind unless a body for the same or a later generation is already bound."""
        with self._lock:
            current = self._tasks.get(name)
            if current is not None and current[0] >= generation:
                return False
            self._tasks[name] = (generation, task)
            return True

    def unbind(self, name: str) -> None:
        with self._lock:
            self._tasks.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def generation_of(self, name: str) -> int | None:
        with self._lock:
            bound = self._tasks.get(name)
        return bound[0] if bound is not None else None

    def resolve(self, entry: ScheduleEntry) -> Callable[..., Any] | None:
        with self._lock:
            bound = self._tasks.get(entry.name)
        if bound is not None and bound[0] == entry.generation:
            return bound[1]

        try:
            task = resolve_task_ref(entry.definition.task_ref)
        except InvalidDefinitionError as e:
            logger.warning(
                "task_unresolved",
                extra={"event": "task_unresolved", "work_name": entry.name, "code": str(e)},
            )
            return None

        self.bind_if_newer(entry.name, task, generation=entry.generation)
        return task
