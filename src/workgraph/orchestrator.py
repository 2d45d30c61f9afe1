from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from workgraph.config import RunMode, WorkgraphConfig
from workgraph.executors.base import ExecutorError, ImplementationExecutor
from workgraph.graph import DependencyGraph, GraphError
from workgraph.models import (
    BLOCKING_STATES,
    DiagnosticCategory,
    ExecutionContext,
    IntegrationResult,
    RunReport,
    Task,
    TaskOutcome,
    TaskState,
    VerdictKind,
    VerificationResult,
    utcnow_iso,
)
from workgraph.review.gate import ReviewGate
from workgraph.state.git_notes import GitNotesStore, WorkgraphStateError
from workgraph.store.base import AdapterError, TaskStore
from workgraph.verification.budget import requires_prior_approval
from workgraph.verification.gate import VerificationGate
from workgraph.workspace.contexts import ContextError, ContextManager
from workgraph.workspace.vcs import GitBackend

logger = logging.getLogger(__name__)

EXCEEDED_RETRY_BUDGET = "exceeded retry budget"
PRE_DISPATCH_APPROVAL = "large budget class requires human approval before dispatch"
HEARTBEAT_INTERVAL_SECONDS = 15.0
RESUMABLE_STATES = frozenset(
    {
        TaskState.PENDING,
        TaskState.BLOCKED,
        TaskState.READY,
        TaskState.RUNNING,
        TaskState.AWAITING_REVIEW,
        TaskState.NEEDS_CHANGES,
    }
)


class OrchestratorError(RuntimeError):
    """Raised for operator requests that do not apply to the current state."""


@dataclass(slots=True)
class RunState:
    run_id: str
    graph: DependencyGraph
    report: RunReport
    states: dict[str, TaskState]
    contexts: dict[str, ExecutionContext] = field(default_factory=dict)
    verifications: dict[str, list[VerificationResult]] = field(default_factory=dict)
    held: set[str] = field(default_factory=set)
    in_flight: set[str] = field(default_factory=set)
    threads: set[asyncio.Future] = field(default_factory=set)
    aborted: bool = False


class Orchestrator:
    """Runs batches one after another; a batch integrates in creation order once it settles."""

    def __init__(
        self,
        *,
        store: TaskStore,
        contexts: ContextManager,
        executor: ImplementationExecutor,
        verification: VerificationGate,
        review: ReviewGate,
        config: WorkgraphConfig,
        state: GitNotesStore,
    ) -> None:
        self.store = store
        self.contexts = contexts
        self.executor = executor
        self.verification = verification
        self.review = review
        self.config = config
        self.state = state
        self._abort_requested = threading.Event()
        self._last_heartbeat = 0.0

    # -- bookkeeping ---------------------------------------------------------

    def _emit(self, run_id: str, event: str, **fields: Any) -> None:
        payload = {"run_id": run_id, "event": event, **fields}
        logger.info("%s %s", event, {key: value for key, value in fields.items()})
        self.state.add_event(payload)

    def _lease_ttl(self) -> float:
        return max(60.0, float(self.config.executor.timeout_seconds) * 2.0)

    def _acquire_lease(self, run_id: str) -> None:
        now_epoch = time.time()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict):
                active_run = str(active.get("run_id", ""))
                if active_run and float(active.get("expires_epoch", 0)) > now_epoch:
                    raise WorkgraphStateError(
                        f"Run {active_run} still holds the lease. "
                        f"Use `workgraph abort {active_run}` or wait for it to finish."
                    )
            leases["active"] = {
                "run_id": run_id,
                "heartbeat_at": utcnow_iso(),
                "expires_epoch": now_epoch + self._lease_ttl(),
            }
            return leases

        self.state.update_json("leases", _updater, default={})

    def _heartbeat(self, run_id: str) -> None:
        if time.monotonic() - self._last_heartbeat < HEARTBEAT_INTERVAL_SECONDS:
            return
        self._last_heartbeat = time.monotonic()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict) and active.get("run_id") == run_id:
                active["heartbeat_at"] = utcnow_iso()
                active["expires_epoch"] = time.time() + self._lease_ttl()
            return leases

        self.state.update_json("leases", _updater, default={})

    def _release_lease(self, run_id: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict) and active.get("run_id") == run_id:
                leases["active"] = None
            return leases

        self.state.update_json("leases", _updater, default={})

    def _transition(
        self, run: RunState, task_id: str, state: TaskState, *, reason: str | None = None
    ) -> None:
        # Claimed only once the store has accepted the write.
        self.store.update_state(task_id, state, reason=reason)
        run.states[task_id] = state
        self._emit(run.run_id, "task_state", task_id=task_id, state=state.value, reason=reason)

    def _settle(
        self,
        run: RunState,
        task_id: str,
        state: TaskState,
        *,
        reason: str,
        command: str = "",
        review_cycles: int = 0,
    ) -> TaskOutcome:
        self._transition(run, task_id, state, reason=reason)
        note = f"{state.value}: {reason}"
        if command:
            note += f" (command: {command})"
        self.store.append_note(task_id, note)
        outcome = TaskOutcome(task_id, state, reason, command, review_cycles)
        run.report.outcomes[task_id] = outcome
        return outcome

    def _abort_signalled(self, run_id: str) -> bool:
        if self._abort_requested.is_set():
            return True
        try:
            return bool(self.state.get_run(run_id).get("abort_requested"))
        except WorkgraphStateError as exc:
            logger.warning("Could not read abort flag for %s: %s", run_id, exc)
            return False

    # -- operator requests ---------------------------------------------------

    def abort(self) -> None:
        """Abort the run executing in this process at its next poll."""
        self._abort_requested.set()

    def resume(self, task_id: str) -> list[str]:
        """Human sign-off for an escalated task.

        Resets the task and everything it blocked to ``pending`` and marks the
        task approved. Returns the ids that were reset.
        """
        task = self.store.get_task(task_id)
        if task.state != TaskState.BLOCKED_FOR_HUMAN:
            raise OrchestratorError(
                f"Task {task_id} is {task.state.value}; only blocked_for_human tasks can resume."
            )
        self.contexts.discard(task_id)
        task.state = TaskState.PENDING
        task.reason = None
        task.approved = True
        task.blocked_by = []
        self.store.put_task(task)
        self.store.append_note(task_id, "resumed with human approval")
        reset = [task_id]
        if task.parent_id is not None:
            for sibling in self.store.list_children(task.parent_id):
                if sibling.state != TaskState.BLOCKED or task_id not in sibling.blocked_by:
                    continue
                remaining = [item for item in sibling.blocked_by if item != task_id]
                self.store.set_blocked_by(sibling.id, remaining)
                if not remaining:
                    self.store.update_state(sibling.id, TaskState.PENDING, reason=None)
                    self.store.append_note(sibling.id, f"unblocked: {task_id} resumed")
                    reset.append(sibling.id)
        self.state.add_event({"event": "task_resumed", "task_id": task_id, "reset": reset})
        return reset

    def resolve(self, task_id: str, *, abort: bool = False) -> IntegrationResult:
        """Retry a conflicted integration; ``abort=True`` fails the task instead."""
        task = self.store.get_task(task_id)
        base_ref = self.config.project.base_ref
        context = self.contexts.adopt(task_id, base_ref)
        if context is None:
            raise OrchestratorError(f"No retained context for {task_id}.")
        if abort:
            self.contexts.release(context, cleanup=True)
            reason = "integration abandoned after merge conflict"
            self.store.update_state(task_id, TaskState.FAILED, reason=reason)
            self.store.append_note(task_id, f"failed: {reason}")
            if task.parent_id is not None:
                siblings = self.store.list_children(task.parent_id)
                graph = DependencyGraph(siblings)
                for dependent in graph.dependents(task_id):
                    self.store.update_state(
                        dependent, TaskState.BLOCKED, reason=f"dependency {task_id} failed"
                    )
                    self.store.set_blocked_by(dependent, [task_id])
            self.state.add_event({"event": "integration_abandoned", "task_id": task_id})
            return IntegrationResult(merged=False)

        self.contexts.commit(context, f"workgraph: resolve {task_id}")
        result = self.contexts.integrate(context)
        if result.merged:
            self.contexts.release(context, cleanup=True)
            self.store.append_note(task_id, "integrated after manual conflict resolution")
        self.state.add_event(
            {
                "event": "integration" if result.merged else "integration_conflict",
                "task_id": task_id,
                "conflicting_paths": list(result.conflicting_paths),
            }
        )
        return result

    def status(self, root_id: str) -> dict[str, Any]:
        tasks = self.store.list_children(root_id)
        counts: dict[str, int] = {}
        for task in tasks:
            counts[task.state.value] = counts.get(task.state.value, 0) + 1
        runs = [
            run for run in self.state.get_runs().values()
            if isinstance(run, dict) and run.get("root_id") == root_id
        ]
        runs.sort(key=lambda item: str(item.get("started_at", "")))
        return {
            "root_id": root_id,
            "tasks": [
                {
                    "id": task.id,
                    "title": task.title,
                    "state": task.state.value,
                    "reason": task.reason,
                    "blocked_by": list(task.blocked_by),
                }
                for task in tasks
            ],
            "counts": counts,
            "latest_run": runs[-1] if runs else None,
            "lease": self.state.get_leases().get("active"),
        }

    # -- run -----------------------------------------------------------------

    async def run(self, root_id: str, mode: RunMode | None = None) -> RunReport:
        run_mode = mode or self.config.workflow.mode
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        report = RunReport(
            run_id=run_id, root_id=root_id, status="running", started_at=utcnow_iso()
        )
        self._abort_requested.clear()
        self._acquire_lease(run_id)
        self.state.upsert_run(
            run_id,
            {
                "root_id": root_id,
                "mode": run_mode,
                "status": "in_progress",
                "started_at": report.started_at,
                "abort_requested": False,
            },
        )
        run: RunState | None = None
        try:
            tasks = self.store.list_children(root_id)
            try:
                graph = DependencyGraph(tasks)
            except GraphError as exc:
                report.status = "invalid"
                report.message = str(exc)
                self._emit(run_id, "graph_invalid", kind=exc.kind, nodes=list(exc.nodes))
                return report
            run = RunState(
                run_id=run_id,
                graph=graph,
                report=report,
                states={task.id: task.state for task in tasks},
            )
            await self._execute(run, run_mode)
        except AdapterError as exc:
            logger.error("Task store failed during %s: %s", run_id, exc)
            report.status = "paused"
            report.message = f"task store unavailable: {exc}"
            self._emit(run_id, "store_unavailable", operation=exc.operation, error=str(exc))
        finally:
            if run is not None:
                self._release_leftovers(run)
            report.ended_at = utcnow_iso()
            if report.status == "running":
                report.status = "paused"
                report.message = report.message or "run interrupted by an unexpected error"
            self.state.upsert_run(run_id, report.to_dict())
            self.state.increment_metric(f"runs_{report.status}")
            self._release_lease(run_id)
        return report

    async def _execute(self, run: RunState, mode: RunMode) -> None:
        report = run.report
        graph = run.graph
        unmerged: list[str] = []
        for task_id in graph.task_ids:
            if run.states[task_id] != TaskState.DONE:
                continue
            context = self.contexts.adopt(task_id, self.config.project.base_ref)
            if context is not None:
                # Approved by an earlier run but never merged into the base.
                run.contexts[task_id] = context
                unmerged.append(task_id)
        if unmerged:
            await self._integrate_batch(run, unmerged)
        self._initial_transitions(run)

        while True:
            batches, blocked = graph.replan(run.states)
            self._block_dependents(run, blocked)
            if not batches:
                break
            waiting: set[str] = set()
            for held_id in run.held:
                waiting.update(graph.dependents(held_id))
            batch = [task_id for task_id in batches[0].task_ids if task_id not in waiting]
            if not batch:
                break
            for task_id in batch:
                if run.states[task_id] != TaskState.READY:
                    self._transition(run, task_id, TaskState.READY)
            report.batches.append(batch)
            self._emit(run.run_id, "batch_started", index=len(report.batches) - 1, tasks=batch)
            errors = await self._run_batch(run, batch, mode)
            if run.aborted:
                break
            await self._integrate_batch(run, batch)
            if errors:
                raise errors[0]

        if run.aborted:
            report.status = "aborted"
            report.message = "run aborted; integrated work was kept"
        elif run.held:
            report.status = "paused"
            report.message = "integration conflicts need manual resolution: " + ", ".join(
                sorted(run.held, key=graph.task_ids.index)
            )
        elif all(state == TaskState.DONE for state in run.states.values()):
            report.status = "complete"
        else:
            report.status = "partial"

        if report.integrated:
            try:
                tag = await asyncio.to_thread(
                    self.contexts.create_checkpoint, f"{report.root_id}-{report.status}"
                )
                self._emit(run.run_id, "checkpoint", tag=tag)
            except ContextError as exc:
                logger.warning("Checkpoint failed for %s: %s", run.run_id, exc)

    def _initial_transitions(self, run: RunState) -> None:
        graph = run.graph
        done = [task_id for task_id, state in run.states.items() if state == TaskState.DONE]
        targets = graph.initial_states(done)
        for task_id in graph.task_ids:
            state = run.states[task_id]
            if state not in RESUMABLE_STATES:
                continue
            if requires_prior_approval(graph.task(task_id)):
                self._settle(
                    run, task_id, TaskState.BLOCKED_FOR_HUMAN, reason=PRE_DISPATCH_APPROVAL
                )
                continue
            target = targets[task_id]
            if state != target:
                pending_deps = [dep for dep in graph.dependencies(task_id) if dep not in done]
                reason = f"waiting on {', '.join(pending_deps)}" if pending_deps else None
                self._transition(run, task_id, target, reason=reason)

    def _block_dependents(self, run: RunState, blocked: tuple[str, ...]) -> None:
        graph = run.graph
        sinks = [task_id for task_id in graph.task_ids if run.states[task_id] in BLOCKING_STATES]
        for task_id in blocked:
            if task_id in run.report.outcomes or run.states[task_id] in BLOCKING_STATES:
                continue
            blockers = [sink for sink in sinks if task_id in graph.dependents(sink)]
            causes = ", ".join(f"{sink} {run.states[sink].value}" for sink in blockers)
            command = next(
                (
                    run.report.outcomes[sink].command
                    for sink in blockers
                    if sink in run.report.outcomes and run.report.outcomes[sink].command
                ),
                "",
            )
            self.store.set_blocked_by(task_id, blockers)
            self._settle(
                run, task_id, TaskState.BLOCKED, reason=f"dependency {causes}", command=command
            )

    async def _run_batch(
        self, run: RunState, batch: list[str], mode: RunMode
    ) -> list[BaseException]:
        inline = len(batch) == 1 and self.config.workflow.inline_single_task
        if mode == "sequential" or len(batch) == 1:
            errors: list[BaseException] = []
            for task_id in batch:
                worker = asyncio.create_task(self._work(run, task_id, inline=inline))
                errors.extend(await self._supervise(run, [worker]))
                if run.aborted or errors:
                    break
            return errors
        workers = [
            asyncio.create_task(self._work(run, task_id, inline=False)) for task_id in batch
        ]
        return await self._supervise(run, workers)

    async def _supervise(
        self, run: RunState, workers: list[asyncio.Task]
    ) -> list[BaseException]:
        pending: set[asyncio.Task] = set(workers)
        poll = max(0.05, float(self.config.workflow.abort_poll_seconds))
        while pending:
            _, pending = await asyncio.wait(pending, timeout=poll)
            if pending and self._abort_signalled(run.run_id):
                interrupted = set(run.in_flight)
                for worker in pending:
                    worker.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                await self._drain_threads(run)
                self._handle_abort(run, interrupted)
                break
            self._heartbeat(run.run_id)
        # Siblings always settle first; the caller integrates before re-raising.
        return [
            worker.exception()
            for worker in workers
            if not worker.cancelled() and worker.exception() is not None
        ]

    async def _offload(self, run: RunState, func: Any, *args: Any, **kwargs: Any) -> Any:
        # Threads outlive a cancelled worker; abort waits for them via run.threads.
        future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
        run.threads.add(future)
        future.add_done_callback(run.threads.discard)
        return await asyncio.shield(future)

    async def _drain_threads(self, run: RunState) -> None:
        while run.threads:
            await asyncio.gather(*list(run.threads), return_exceptions=True)

    def _handle_abort(self, run: RunState, in_flight: set[str]) -> None:
        run.aborted = True
        interrupted = sorted(in_flight | set(run.contexts), key=run.graph.task_ids.index)
        for task_id in interrupted:
            context = run.contexts.pop(task_id, None)
            if context is None and run.states.get(task_id) not in BLOCKING_STATES:
                # Cancelled between acquire finishing and the worker recording it.
                context = next(
                    (item for item in self.contexts.bound() if item.task_id == task_id), None
                )
            if context is not None:
                self.contexts.release(context, cleanup=True)
            if run.states.get(task_id) not in BLOCKING_STATES:
                self._transition(run, task_id, TaskState.PENDING, reason="run aborted")
                run.report.outcomes.pop(task_id, None)
        self._emit(run.run_id, "run_aborted", interrupted=interrupted)

    async def _watchdog(self, run: RunState, task_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        logger.warning("Task %s still running after %.0fs", task_id, seconds)
        self._emit(run.run_id, "task_stalled", task_id=task_id, after_seconds=seconds)

    async def _work(self, run: RunState, task_id: str, *, inline: bool) -> TaskOutcome:
        run.in_flight.add(task_id)
        watchdog: asyncio.Task | None = None
        seconds = float(self.config.workflow.task_watchdog_seconds)
        if seconds > 0:
            watchdog = asyncio.create_task(self._watchdog(run, task_id, seconds))
        try:
            return await self._implement_and_gate(run, task_id, inline=inline)
        except AdapterError:
            raise
        except Exception as exc:
            logger.exception("Task %s raised unexpectedly", task_id)
            return await self._fail_unexpected(run, task_id, exc)
        finally:
            run.in_flight.discard(task_id)
            if watchdog is not None:
                watchdog.cancel()

    async def _fail_unexpected(self, run: RunState, task_id: str, exc: Exception) -> TaskOutcome:
        if run.states.get(task_id) == TaskState.DONE:
            # Already approved; the context stays bound so the batch integrates it.
            return run.report.outcomes.get(task_id) or TaskOutcome(
                task_id, TaskState.DONE, "approved"
            )
        reason = f"unexpected error: {exc}"
        context = run.contexts.get(task_id)
        if context is None:
            return self._settle(run, task_id, TaskState.FAILED, reason=reason)
        return await self._finish(
            run, context, TaskState.FAILED, reason=reason, command="", cycles=0
        )

    async def _acquire(self, run: RunState, task: Task, *, inline: bool) -> ExecutionContext:
        base_ref = self.config.project.base_ref
        acquire = self.contexts.acquire_inline if inline else self.contexts.acquire
        try:
            return await self._offload(run, acquire, task.id, base_ref)
        except ContextError as exc:
            logger.warning("Context for %s failed, retrying once: %s", task.id, exc)
            self._emit(run.run_id, "context_retry", task_id=task.id, kind=exc.kind, error=str(exc))
            if exc.kind == "already_exists" and not inline and self.contexts.get(task.id) is None:
                # Leftover worktree of an interrupted run.
                await self._offload(run, self.contexts.discard, task.id)
            await asyncio.sleep(float(self.config.workflow.context_retry_backoff_seconds))
        return await self._offload(run, acquire, task.id, base_ref)

    async def _implement_and_gate(
        self, run: RunState, task_id: str, *, inline: bool
    ) -> TaskOutcome:
        task = self.store.get_task(task_id)
        try:
            context = await self._acquire(run, task, inline=inline)
        except ContextError as exc:
            branch = GitBackend.branch_for(task.id)
            command = (
                "git status --porcelain"
                if inline
                else f"git worktree add -b {branch} {self.contexts.contexts_root} "
                f"{self.config.project.base_ref}"
            )
            return self._settle(
                run,
                task_id,
                TaskState.FAILED,
                reason=f"context {exc.kind}: {exc}",
                command=command,
            )
        run.contexts[task_id] = context
        self._emit(
            run.run_id,
            "task_dispatched",
            task_id=task_id,
            branch=context.branch_ref,
            inline=context.inline,
        )

        feedback: tuple[str, ...] = ()
        cycles = 0
        max_cycles = max(1, int(self.config.workflow.max_review_cycles))
        try:
            while True:
                self._transition(run, task_id, TaskState.RUNNING)
                try:
                    await self.executor.implement(context, task, feedback)
                except ExecutorError as exc:
                    return await self._finish(
                        run,
                        context,
                        TaskState.FAILED,
                        reason=f"executor failed: {exc}",
                        command=exc.command,
                        cycles=cycles,
                    )
                await self._offload(
                    run,
                    self.contexts.commit,
                    context,
                    f"workgraph: {task.id} {task.title} (attempt {cycles + 1})",
                )
                result = await self._offload(run, self.verification.verify, context, task)
                run.verifications.setdefault(task_id, []).append(result)
                self._emit(run.run_id, "verification", task_id=task_id, result=result.to_dict())
                infra = [
                    item for item in result.failures if item.category == DiagnosticCategory.INFRA
                ]
                if infra:
                    return await self._finish(
                        run,
                        context,
                        TaskState.FAILED,
                        reason=f"verification infrastructure fault: {infra[0].message}",
                        command=infra[0].command,
                        cycles=cycles,
                    )

                self._transition(run, task_id, TaskState.AWAITING_REVIEW)
                verdict = await self.review.review(context, task, result)
                cycles += 1
                self._emit(
                    run.run_id,
                    "review_verdict",
                    task_id=task_id,
                    cycle=cycles,
                    verdict=verdict.to_dict(),
                )
                command = result.failures[0].command if result.failures else ""
                if verdict.kind == VerdictKind.APPROVE:
                    return self._settle(
                        run, task_id, TaskState.DONE, reason="approved", review_cycles=cycles
                    )
                if verdict.kind == VerdictKind.BLOCKED_FOR_HUMAN:
                    return await self._finish(
                        run,
                        context,
                        TaskState.BLOCKED_FOR_HUMAN,
                        reason="; ".join(verdict.reasons),
                        command=command,
                        cycles=cycles,
                    )
                if cycles >= max_cycles:
                    self.store.append_note(
                        task_id, "last review: " + "; ".join(verdict.reasons)
                    )
                    return await self._finish(
                        run,
                        context,
                        TaskState.BLOCKED_FOR_HUMAN,
                        reason=EXCEEDED_RETRY_BUDGET,
                        command=command,
                        cycles=cycles,
                    )
                self._transition(
                    run, task_id, TaskState.NEEDS_CHANGES, reason="; ".join(verdict.reasons)
                )
                self.store.append_note(
                    task_id, f"review cycle {cycles}: " + "; ".join(verdict.reasons)
                )
                feedback = verdict.reasons
        except ContextError as exc:
            return await self._finish(
                run,
                context,
                TaskState.FAILED,
                reason=f"context {exc.kind}: {exc}",
                command=f"git -C {context.base_path} status",
                cycles=cycles,
            )

    async def _finish(
        self,
        run: RunState,
        context: ExecutionContext,
        state: TaskState,
        *,
        reason: str,
        command: str,
        cycles: int,
    ) -> TaskOutcome:
        """Settle a task that will not integrate; escalations keep their context."""
        retain = state == TaskState.BLOCKED_FOR_HUMAN
        run.contexts.pop(context.task_id, None)
        await self._offload(run, self.contexts.release, context, cleanup=not retain)
        return self._settle(
            run, context.task_id, state, reason=reason, command=command, review_cycles=cycles
        )

    async def _integrate_batch(self, run: RunState, batch: list[str]) -> None:
        for task_id in batch:
            if run.states.get(task_id) != TaskState.DONE:
                continue
            context = run.contexts.get(task_id)
            if context is None:
                continue
            try:
                result = await asyncio.to_thread(self.contexts.integrate, context)
            except ContextError as exc:
                result = IntegrationResult(merged=False)
                logger.error("Integration of %s failed: %s", task_id, exc)
                self.store.append_note(task_id, f"integration failed: {exc}")
            if result.merged:
                await asyncio.to_thread(self.contexts.release, context, cleanup=True)
                run.contexts.pop(task_id, None)
                run.report.integrated.append(task_id)
                self._emit(run.run_id, "integration", task_id=task_id)
                continue
            await asyncio.to_thread(self.contexts.release, context, cleanup=False)
            run.contexts.pop(task_id, None)
            run.held.add(task_id)
            paths = list(result.conflicting_paths)
            run.report.conflicts[task_id] = paths
            self.store.append_note(
                task_id,
                "integration conflict in "
                + (", ".join(paths) or "the base working copy")
                + f"; resolve in {context.base_path} then run `workgraph resolve {task_id}`",
            )
            self._emit(run.run_id, "integration_conflict", task_id=task_id, paths=paths)

    def _release_leftovers(self, run: RunState) -> None:
        for task_id, context in list(run.contexts.items()):
            approved = run.states.get(task_id) == TaskState.DONE
            try:
                if approved and context.inline:
                    # Inline commits already sit on the base branch.
                    self.contexts.integrate(context)
                    run.report.integrated.append(task_id)
                    self.contexts.release(context, cleanup=True)
                elif approved:
                    # Keep the worktree; the next run adopts and integrates it.
                    self.contexts.release(context, cleanup=False)
                    logger.warning("Kept approved context of %s for the next run", task_id)
                else:
                    self.contexts.release(context, cleanup=True)
            except ContextError as exc:
                logger.warning("Could not release context for %s: %s", task_id, exc)
            run.contexts.pop(task_id, None)


def request_abort(state: GitNotesStore, run_id: str) -> dict[str, Any]:
    """Flag a run for abort; the owning process notices at its next poll."""
    run = state.get_run(run_id)
    if not run:
        raise OrchestratorError(f"Unknown run: {run_id}")
    if run.get("status") != "in_progress":
        raise OrchestratorError(f"Run {run_id} is {run.get('status')}; nothing to abort.")
    state.upsert_run(run_id, {"abort_requested": True, "abort_requested_at": utcnow_iso()})
    return state.get_run(run_id)
