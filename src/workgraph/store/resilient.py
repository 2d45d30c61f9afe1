from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from workgraph.models import Task, TaskState
from workgraph.store.base import AdapterError, TaskStore

logger = logging.getLogger(__name__)

StoreEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class StoreRetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.25


class RetryingTaskStore(TaskStore):
    """Retries each adapter call once with backoff, then fails loudly."""

    def __init__(
        self,
        inner: TaskStore,
        retry_policy: StoreRetryPolicy | None = None,
        event_hook: StoreEventHook | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.retry_policy = retry_policy or StoreRetryPolicy()
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _call(self, operation: str, call: Callable[[], T]) -> T:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "store_retry",
                        "operation": operation,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                self._sleep(delay)
            try:
                return call()
            except AdapterError as exc:
                errors.append(f"[{attempt}] {exc}")
                logger.warning("Task store %s failed (attempt %d): %s", operation, attempt, exc)
                if not exc.retriable:
                    raise
        raise AdapterError(
            f"Task store unreachable for {operation}: {'; '.join(errors[-3:])}",
            operation=operation,
            retriable=False,
        )

    def get_task(self, task_id: str) -> Task:
        return self._call("get_task", lambda: self.inner.get_task(task_id))

    def list_children(self, parent_id: str) -> list[Task]:
        return self._call("list_children", lambda: self.inner.list_children(parent_id))

    def update_state(self, task_id: str, state: TaskState, *, reason: str | None = None) -> Task:
        return self._call(
            "update_state", lambda: self.inner.update_state(task_id, state, reason=reason)
        )

    def append_note(self, task_id: str, text: str) -> None:
        self._call("append_note", lambda: self.inner.append_note(task_id, text))

    def set_blocked_by(self, task_id: str, blocker_ids: list[str]) -> None:
        self._call("set_blocked_by", lambda: self.inner.set_blocked_by(task_id, blocker_ids))

    def add_task(self, task: Task) -> Task:
        return self._call("add_task", lambda: self.inner.add_task(task))

    def put_task(self, task: Task) -> Task:
        return self._call("put_task", lambda: self.inner.put_task(task))
