from __future__ import annotations

from typing import Any

from workgraph.models import Task, TaskState, utcnow_iso
from workgraph.state.git_notes import GitNotesStore, WorkgraphStateError
from workgraph.store.base import AdapterError, TaskStore


class StateTaskStore(TaskStore):
    """Task tracker kept in the ``tasks`` namespace of the state store.

    Records are stored as a list so creation order survives round trips.
    """

    def __init__(self, state: GitNotesStore) -> None:
        self.state = state

    def _records(self) -> list[dict[str, Any]]:
        try:
            payload = self.state.get_json("tasks", default={"task_queue": []})
        except WorkgraphStateError as exc:
            raise AdapterError(str(exc), operation="read") from exc
        queue = payload.get("task_queue", []) if isinstance(payload, dict) else []
        return [item for item in queue if isinstance(item, dict)] if isinstance(queue, list) else []

    def _mutate(self, operation: str, task_id: str, mutate) -> Task:
        result: dict[str, Task] = {}

        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"task_queue": []}
            queue = data.get("task_queue")
            if not isinstance(queue, list):
                queue = []
            for index, item in enumerate(queue):
                if isinstance(item, dict) and item.get("id") == task_id:
                    task = Task.from_dict(item)
                    mutate(task)
                    queue[index] = task.to_dict()
                    result["task"] = task
                    break
            data["task_queue"] = queue
            return data

        try:
            self.state.update_json("tasks", _updater, default={"task_queue": []})
        except (WorkgraphStateError, ValueError) as exc:
            raise AdapterError(str(exc), operation=operation) from exc
        if "task" not in result:
            raise AdapterError(f"Task not found: {task_id}", operation=operation, retriable=False)
        return result["task"]

    def all_tasks(self) -> list[Task]:
        return [Task.from_dict(item) for item in self._records()]

    def get_task(self, task_id: str) -> Task:
        for item in self._records():
            if item.get("id") == task_id:
                return Task.from_dict(item)
        raise AdapterError(f"Task not found: {task_id}", operation="get_task", retriable=False)

    def list_children(self, parent_id: str) -> list[Task]:
        return [
            Task.from_dict(item) for item in self._records() if item.get("parent_id") == parent_id
        ]

    def update_state(self, task_id: str, state: TaskState, *, reason: str | None = None) -> Task:
        def _apply(task: Task) -> None:
            task.state = state
            task.reason = reason

        return self._mutate("update_state", task_id, _apply)

    def append_note(self, task_id: str, text: str) -> None:
        self._mutate(
            "append_note", task_id, lambda task: task.notes.append(f"[{utcnow_iso()}] {text}")
        )

    def set_blocked_by(self, task_id: str, blocker_ids: list[str]) -> None:
        def _apply(task: Task) -> None:
            task.blocked_by = list(dict.fromkeys(blocker_ids))

        self._mutate("set_blocked_by", task_id, _apply)

    def add_task(self, task: Task) -> Task:
        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"task_queue": []}
            queue = data.get("task_queue")
            if not isinstance(queue, list):
                queue = []
            if any(isinstance(item, dict) and item.get("id") == task.id for item in queue):
                raise AdapterError(
                    f"Task already exists: {task.id}", operation="add_task", retriable=False
                )
            queue.append(task.to_dict())
            data["task_queue"] = queue
            return data

        try:
            self.state.update_json("tasks", _updater, default={"task_queue": []})
        except WorkgraphStateError as exc:
            raise AdapterError(str(exc), operation="add_task") from exc
        return task

    def put_task(self, task: Task) -> Task:
        def _updater(payload: Any) -> dict[str, Any]:
            data = payload if isinstance(payload, dict) else {"task_queue": []}
            queue = data.get("task_queue")
            if not isinstance(queue, list):
                queue = []
            for index, item in enumerate(queue):
                if isinstance(item, dict) and item.get("id") == task.id:
                    queue[index] = task.to_dict()
                    break
            else:
                queue.append(task.to_dict())
            data["task_queue"] = queue
            return data

        try:
            self.state.update_json("tasks", _updater, default={"task_queue": []})
        except WorkgraphStateError as exc:
            raise AdapterError(str(exc), operation="put_task") from exc
        return task
