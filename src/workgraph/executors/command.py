from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence

from workgraph.executors.base import ExecutorError, ImplementationExecutor
from workgraph.models import ExecutionContext, Task

logger = logging.getLogger(__name__)


class CommandExecutor(ImplementationExecutor):
    """Runs a configured shell command inside the task's context.

    The task is exposed through ``WORKGRAPH_*`` environment variables;
    ``WORKGRAPH_TASK_JSON`` carries the full record.
    """

    def __init__(self, command: str, *, timeout_seconds: float | None = None) -> None:
        if not command.strip():
            raise ValueError("CommandExecutor requires a non-empty command.")
        self.command = command.strip()
        self.timeout_seconds = timeout_seconds

    def environment(self, context: ExecutionContext, task: Task, feedback: Sequence[str]) -> dict:
        env = os.environ.copy()
        env.update(
            {
                "WORKGRAPH_TASK_ID": task.id,
                "WORKGRAPH_TASK_TITLE": task.title,
                "WORKGRAPH_TASK_JSON": json.dumps(task.to_dict(), ensure_ascii=False),
                "WORKGRAPH_FEEDBACK": "\n".join(feedback),
                "WORKGRAPH_BRANCH": context.branch_ref,
                "WORKGRAPH_CONTEXT": str(context.base_path),
            }
        )
        return env

    async def implement(
        self, context: ExecutionContext, task: Task, feedback: Sequence[str] = ()
    ) -> str:
        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(context.base_path),
                env=self.environment(context, task, feedback),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutorError(f"Could not start executor: {exc}", command=self.command) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ExecutorError(
                f"Executor timed out after {self.timeout_seconds:.1f}s", command=self.command
            ) from exc
        except asyncio.CancelledError:
            # Abort: do not leave the child running in the worktree.
            if process.returncode is None:
                process.kill()
            raise

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-400:]
            raise ExecutorError(
                f"Executor exited with code {process.returncode}: {tail}", command=self.command
            )
        logger.debug("Executor finished %s", task.id)
        return output[-2000:]
