from pathlib import Path

import pytest

from workgraph.models import Task, TaskState
from workgraph.state import GitNotesStore
from workgraph.store import AdapterError, RetryingTaskStore, StateTaskStore
from workgraph.store.base import TaskStore
from workgraph.store.resilient import StoreRetryPolicy


def _store(tmp_path: Path) -> StateTaskStore:
    return StateTaskStore(GitNotesStore(tmp_path))


class FlakyStore(TaskStore):
    """Fails the first ``failures`` calls of every operation."""

    def __init__(self, inner: TaskStore, failures: int, *, retriable: bool = True) -> None:
        self.inner = inner
        self.failures = failures
        self.retriable = retriable
        self.calls: dict[str, int] = {}

    def _maybe_fail(self, operation: str) -> None:
        count = self.calls.get(operation, 0)
        self.calls[operation] = count + 1
        if count < self.failures:
            raise AdapterError("tracker offline", operation=operation, retriable=self.retriable)

    def get_task(self, task_id: str) -> Task:
        self._maybe_fail("get_task")
        return self.inner.get_task(task_id)

    def list_children(self, parent_id: str) -> list[Task]:
        self._maybe_fail("list_children")
        return self.inner.list_children(parent_id)

    def update_state(self, task_id: str, state: TaskState, *, reason: str | None = None) -> Task:
        self._maybe_fail("update_state")
        return self.inner.update_state(task_id, state, reason=reason)

    def append_note(self, task_id: str, text: str) -> None:
        self._maybe_fail("append_note")
        self.inner.append_note(task_id, text)

    def set_blocked_by(self, task_id: str, blocker_ids: list[str]) -> None:
        self._maybe_fail("set_blocked_by")
        self.inner.set_blocked_by(task_id, blocker_ids)

    def add_task(self, task: Task) -> Task:
        self._maybe_fail("add_task")
        return self.inner.add_task(task)

    def put_task(self, task: Task) -> Task:
        self._maybe_fail("put_task")
        return self.inner.put_task(task)


def test_children_keep_creation_order(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for task_id in ("c", "a", "b"):
        store.add_task(Task(id=task_id, title=task_id.upper(), parent_id="root"))
    store.add_task(Task(id="other", title="Other", parent_id="elsewhere"))

    assert [task.id for task in store.list_children("root")] == ["c", "a", "b"]
    assert [task.id for task in store.all_tasks()] == ["c", "a", "b", "other"]


def test_state_notes_and_blockers_are_persisted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="a", title="A", parent_id="root"))

    confirmed = store.update_state("a", TaskState.BLOCKED, reason="dependency x failed")
    store.append_note("a", "waiting")
    store.set_blocked_by("a", ["x", "x", "y"])

    task = store.get_task("a")
    assert confirmed.state == TaskState.BLOCKED
    assert task.state == TaskState.BLOCKED
    assert task.reason == "dependency x failed"
    assert task.notes[0].endswith("waiting")
    assert task.blocked_by == ["x", "y"]


def test_duplicate_and_unknown_ids_fail_without_retry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="a", title="A"))

    with pytest.raises(AdapterError) as duplicate:
        store.add_task(Task(id="a", title="again"))
    with pytest.raises(AdapterError) as unknown:
        store.get_task("ghost")

    assert duplicate.value.retriable is False
    assert unknown.value.retriable is False


def test_put_task_replaces_the_record(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.add_task(Task(id="a", title="A", state=TaskState.BLOCKED_FOR_HUMAN))

    task = store.get_task("a")
    task.state = TaskState.PENDING
    task.approved = True
    store.put_task(task)

    reloaded = store.get_task("a")
    assert reloaded.state == TaskState.PENDING
    assert reloaded.approved is True


def test_retrying_store_recovers_from_one_failure(tmp_path: Path) -> None:
    events: list[dict] = []
    sleeps: list[float] = []
    inner = _store(tmp_path)
    inner.add_task(Task(id="a", title="A", parent_id="root"))
    store = RetryingTaskStore(
        FlakyStore(inner, failures=1),
        StoreRetryPolicy(max_retries=1, backoff_seconds=0.25),
        event_hook=events.append,
        sleep=sleeps.append,
    )

    task = store.update_state("a", TaskState.READY)

    assert task.state == TaskState.READY
    assert sleeps == [0.25]
    assert events == [
        {"event": "store_retry", "operation": "update_state", "attempt": 1, "delay_seconds": 0.25}
    ]


def test_retrying_store_fails_loudly_after_the_retry(tmp_path: Path) -> None:
    store = RetryingTaskStore(
        FlakyStore(_store(tmp_path), failures=5),
        StoreRetryPolicy(max_retries=1, backoff_seconds=0.0),
        sleep=lambda _: None,
    )

    with pytest.raises(AdapterError, match="unreachable for list_children") as excinfo:
        store.list_children("root")

    assert excinfo.value.retriable is False


def test_retrying_store_does_not_retry_permanent_errors(tmp_path: Path) -> None:
    flaky = FlakyStore(_store(tmp_path), failures=5, retriable=False)
    store = RetryingTaskStore(flaky, StoreRetryPolicy(max_retries=3), sleep=lambda _: None)

    with pytest.raises(AdapterError, match="tracker offline"):
        store.get_task("a")

    assert flaky.calls["get_task"] == 1
