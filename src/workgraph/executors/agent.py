from __future__ import annotations

from collections.abc import Sequence

from workgraph.backends.base import WORKING_DIRECTORY_KEY, AgentBackend, BackendExecutionError
from workgraph.executors.base import ExecutorError, ImplementationExecutor
from workgraph.models import ExecutionContext, Task

IMPLEMENTER_PROMPT = """\
You are the implementer for one task of a larger plan.
Work only inside the current directory; it is an isolated checkout of the project.
Keep the change within the task's scope and size budget.
Add or update tests that name each acceptance scenario id they cover.
Do not commit; the orchestrator records your changes.
Finish with a short summary of what changed."""


def build_instruction(task: Task, feedback: Sequence[str]) -> str:
    lines = [f"Task {task.id}: {task.title}"]
    if task.description:
        lines.extend(["", task.description.strip()])
    if task.scenarios:
        lines.extend(["", "Acceptance scenarios:"])
        lines.extend(f"- {scenario}" for scenario in task.scenarios)
    if task.scope:
        lines.extend(["", "Only touch paths matching:"])
        lines.extend(f"- {pattern}" for pattern in task.scope)
    lines.extend(["", f"Proof type: {task.proof_type}. Budget class: {task.budget_class}."])
    if feedback:
        lines.extend(["", "The previous attempt was rejected. Address every point:"])
        lines.extend(f"- {reason}" for reason in feedback)
    return "\n".join(lines)


class AgentExecutor(ImplementationExecutor):
    """Delegates implementation to a coding agent running in the task's worktree."""

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def implement(
        self, context: ExecutionContext, task: Task, feedback: Sequence[str] = ()
    ) -> str:
        run_context: dict[str, object] = {
            "task_id": task.id,
            "branch": context.branch_ref,
            WORKING_DIRECTORY_KEY: str(context.base_path),
        }
        if self.model:
            run_context["model"] = self.model
        try:
            return await self.backend.complete(
                IMPLEMENTER_PROMPT, build_instruction(task, feedback), run_context
            )
        except BackendExecutionError as exc:
            raise ExecutorError(
                f"Agent backend failed for {task.id}: {exc}", command=f"agent:{exc.backend or ''}"
            ) from exc
