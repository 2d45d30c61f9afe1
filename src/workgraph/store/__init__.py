from workgraph.store.base import AdapterError, TaskStore
from workgraph.store.resilient import RetryingTaskStore
from workgraph.store.state_store import StateTaskStore

__all__ = ["AdapterError", "RetryingTaskStore", "StateTaskStore", "TaskStore"]
