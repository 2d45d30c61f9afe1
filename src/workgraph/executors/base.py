from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from workgraph.models import ExecutionContext, Task


class ExecutorError(RuntimeError):
    """Raised when the executor could not produce work for a task."""

    def __init__(self, message: str, *, command: str = "") -> None:
        super().__init__(message)
        self.command = command


class ImplementationExecutor(ABC):
    """Produces a change for one task inside its execution context.

    ``feedback`` carries the reasons of the previous ``needs_changes``
    verdict and is empty on the first attempt.
    """

    @abstractmethod
    async def implement(
        self, context: ExecutionContext, task: Task, feedback: Sequence[str] = ()
    ) -> str:
        """Modify files under ``context.base_path`` and return a short summary."""
