"""
TaskRegistry -- task definitions keyed by code.

Contract:
    ``TaskRegistry`` stores ``TaskDefinition`` objects keyed by ``code``.
    The scheduler asks it for the handler of each due task; a due task
    with no registered definition is disabled by the scheduler.

Architecture:
    ledger_batch/tasks.  ZERO imports from kernel/services.
    Only imports from ledger_batch.domain (frozen DTOs) and stdlib.

Invariants enforced:
    One definition per task code.
"""

from __future__ import annotations

from collections.abc import Iterable

from ledger_batch.domain.types import TaskDefinition


class TaskRegistry:
    """Registry mapping task codes to TaskDefinitions.

    Contract:
        - ``register()`` adds a definition; raises ValueError on duplicate.
        - ``get()`` retrieves by code; raises KeyError if missing.
        - ``definitions()`` returns every definition, sorted by code.
    """

    def __init__(self, definitions: Iterable[TaskDefinition] = ()) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: TaskDefinition) -> None:
        """Register a task definition.

        Raises:
            ValueError: If a task with the same code is already registered.
        """
        if definition.code in self._tasks:
            raise ValueError(f"Task '{definition.code}' is already registered")
        self._tasks[definition.code] = definition

    def get(self, code: str) -> TaskDefinition:
        """Retrieve a registered task by code.

        Raises:
            KeyError: If no task is registered for the given code.
        """
        try:
            return self._tasks[code]
        except KeyError:
            raise KeyError(
                f"No task registered for code '{code}'. "
                f"Available: {sorted(self._tasks.keys())}"
            ) from None

    def definitions(self) -> tuple[TaskDefinition, ...]:
        return tuple(self._tasks[code] for code in sorted(self._tasks))

    def list_codes(self) -> tuple[str, ...]:
        """Return all registered codes, sorted."""
        return tuple(sorted(self._tasks.keys()))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, code: object) -> bool:
        return code in self._tasks
