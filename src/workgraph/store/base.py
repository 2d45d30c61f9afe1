from __future__ import annotations

from abc import ABC, abstractmethod

from workgraph.models import Task, TaskState


class AdapterError(RuntimeError):
    """Raised when the external task store cannot serve a request."""

    def __init__(
        self, message: str, *, operation: str | None = None, retriable: bool = True
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.retriable = retriable


class TaskStore(ABC):
    """Narrow interface to the task tracker; nothing else touches tracker state."""

    @abstractmethod
    def get_task(self, task_id: str) -> Task:
        """Return one task or raise ``AdapterError`` when it cannot be read."""

    @abstractmethod
    def list_children(self, parent_id: str) -> list[Task]:
        """Return the children of ``parent_id`` in creation order."""

    @abstractmethod
    def update_state(self, task_id: str, state: TaskState, *, reason: str | None = None) -> Task:
        """Persist a state transition and return the confirmed task."""

    @abstractmethod
    def append_note(self, task_id: str, text: str) -> None:
        """Attach a free-form note to the task."""

    @abstractmethod
    def set_blocked_by(self, task_id: str, blocker_ids: list[str]) -> None:
        """Record which tasks currently block ``task_id``."""

    @abstractmethod
    def add_task(self, task: Task) -> Task:
        """Create a task; fails if the id already exists."""

    @abstractmethod
    def put_task(self, task: Task) -> Task:
        """Create or replace a task record."""
