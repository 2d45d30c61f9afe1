from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Literal

from workgraph.models import ExecutionContext, IntegrationResult, utcnow_iso
from workgraph.workspace.vcs import GitBackend, IsolatedCopy, VcsError

logger = logging.getLogger(__name__)

ContextErrorKind = Literal["already_exists", "not_bound", "dirty_base", "vcs"]


class ContextError(RuntimeError):
    """Raised when an execution context cannot be created, used or removed."""

    def __init__(self, kind: ContextErrorKind, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.task_id = task_id


class ContextManager:
    """Owns every sandbox of a run; only ``integrate`` writes the base working copy."""

    def __init__(self, repo_root: Path, *, workspace_dir: str = ".workgraph") -> None:
        self.vcs = GitBackend(repo_root)
        self.repo_root = self.vcs.repo_root
        self.workspace_root = self.repo_root / workspace_dir
        self.contexts_root = self.workspace_root / "contexts"
        self._bound: dict[str, ExecutionContext] = {}
        self._retained: dict[str, ExecutionContext] = {}
        self._integrated: set[str] = set()
        self._lock = threading.RLock()

    def bound(self) -> list[ExecutionContext]:
        with self._lock:
            return list(self._bound.values())

    def retained(self) -> list[ExecutionContext]:
        with self._lock:
            return list(self._retained.values())

    def get(self, task_id: str) -> ExecutionContext | None:
        with self._lock:
            return self._bound.get(task_id) or self._retained.get(task_id)

    def _ensure_workspace(self) -> None:
        # Contexts live inside the repository; keep them out of the base status.
        self.contexts_root.mkdir(parents=True, exist_ok=True)
        ignore_file = self.workspace_root / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    def _vcs_error(self, exc: Exception, task_id: str) -> ContextError:
        return ContextError("vcs", f"{task_id}: {exc}", task_id=task_id)

    def acquire(self, task_id: str, base_ref: str) -> ExecutionContext:
        with self._lock:
            if task_id in self._bound or task_id in self._retained:
                raise ContextError(
                    "already_exists", f"A context is already bound to {task_id}.", task_id=task_id
                )
            self._ensure_workspace()
            try:
                handle = self.vcs.create_isolated_copy(base_ref, task_id, self.contexts_root)
            except FileExistsError as exc:
                raise ContextError("already_exists", str(exc), task_id=task_id) from exc
            except VcsError as exc:
                raise self._vcs_error(exc, task_id) from exc
            context = ExecutionContext(
                task_id=task_id,
                base_path=handle.path,
                branch_ref=handle.branch,
                base_ref=base_ref,
                base_commit=handle.base_commit,
                created_at=utcnow_iso(),
            )
            self._bound[task_id] = context
            logger.debug("Acquired context %s at %s", handle.branch, handle.path)
            return context

    def acquire_inline(self, task_id: str, base_ref: str) -> ExecutionContext:
        """Bind the base working copy itself; only valid when nothing runs concurrently."""
        with self._lock:
            if task_id in self._bound or task_id in self._retained:
                raise ContextError(
                    "already_exists", f"A context is already bound to {task_id}.", task_id=task_id
                )
            if any(item.inline for item in self._bound.values()):
                raise ContextError(
                    "already_exists", "The base working copy is already bound.", task_id=task_id
                )
            try:
                current = self.vcs.current_branch()
                dirty = self.vcs.dirty_paths()
                base_commit = self.vcs.rev_parse("HEAD")
            except VcsError as exc:
                raise self._vcs_error(exc, task_id) from exc
            if current != base_ref:
                raise ContextError(
                    "dirty_base",
                    f"Base working copy is on '{current}', expected '{base_ref}'.",
                    task_id=task_id,
                )
            if dirty:
                raise ContextError(
                    "dirty_base",
                    "Refusing to run inline with a dirty base working copy:\n"
                    + "\n".join(dirty[:20]),
                    task_id=task_id,
                )
            context = ExecutionContext(
                task_id=task_id,
                base_path=self.repo_root,
                branch_ref=base_ref,
                base_ref=base_ref,
                base_commit=base_commit,
                created_at=utcnow_iso(),
                inline=True,
            )
            self._bound[task_id] = context
            return context

    def commit(self, context: ExecutionContext, message: str) -> bool:
        try:
            return self.vcs.commit_all(context.base_path, message)
        except VcsError as exc:
            raise self._vcs_error(exc, context.task_id) from exc

    def diff_stats(self, context: ExecutionContext) -> tuple[int, int, list[str]]:
        try:
            rows = self.vcs.numstat(context.base_path, context.base_commit)
        except VcsError as exc:
            raise self._vcs_error(exc, context.task_id) from exc
        added = sum(row[0] for row in rows)
        deleted = sum(row[1] for row in rows)
        return added, deleted, [row[2] for row in rows]

    def changed_files(self, context: ExecutionContext) -> list[str]:
        return self.diff_stats(context)[2]

    def diff_text(self, context: ExecutionContext) -> str:
        try:
            return self.vcs.diff_text(context.base_path, context.base_commit)
        except VcsError as exc:
            raise self._vcs_error(exc, context.task_id) from exc

    def integrate(self, context: ExecutionContext) -> IntegrationResult:
        """Merge the context branch into its base; conflicts come back as data."""
        with self._lock:
            if context.task_id not in self._bound and context.task_id not in self._retained:
                raise ContextError(
                    "not_bound", f"No context bound to {context.task_id}.", task_id=context.task_id
                )
            if context.inline:
                self._integrated.add(context.task_id)
                return IntegrationResult(merged=True)
            handle = IsolatedCopy(context.base_path, context.branch_ref, context.base_commit)
            try:
                outcome = self.vcs.merge_into(
                    handle, context.base_ref, message=f"workgraph: integrate {context.task_id}"
                )
            except VcsError as exc:
                raise self._vcs_error(exc, context.task_id) from exc
            if outcome.merged:
                self._integrated.add(context.task_id)
            return IntegrationResult(
                merged=outcome.merged, conflicting_paths=tuple(outcome.conflicts)
            )

    def release(self, context: ExecutionContext, *, cleanup: bool = True) -> ExecutionContext:
        """Destroy the sandbox, or retain it for human inspection when ``cleanup`` is off."""
        task_id = context.task_id
        with self._lock:
            self._bound.pop(task_id, None)
            try:
                if context.inline:
                    released = self._release_inline(context, cleanup=cleanup)
                elif cleanup:
                    self.vcs.remove_isolated_copy(
                        IsolatedCopy(context.base_path, context.branch_ref, context.base_commit)
                    )
                    released = context
                else:
                    released = context
            except VcsError as exc:
                raise self._vcs_error(exc, task_id) from exc
            if cleanup:
                self._retained.pop(task_id, None)
            else:
                self._retained[task_id] = released
            return released

    def _release_inline(self, context: ExecutionContext, *, cleanup: bool) -> ExecutionContext:
        if context.task_id in self._integrated:
            return context
        head = self.vcs.rev_parse("HEAD")
        if not cleanup and head != context.base_commit:
            # Move unapproved inline work aside so later batches build on a clean base.
            retained_branch = GitBackend.branch_for(context.task_id, retained=True)
            self.vcs.create_branch(retained_branch, head, force=True)
            self.vcs.reset_hard(self.repo_root, context.base_commit)
            return ExecutionContext(
                task_id=context.task_id,
                base_path=self.repo_root,
                branch_ref=retained_branch,
                base_ref=context.base_ref,
                base_commit=context.base_commit,
                created_at=context.created_at,
                inline=True,
            )
        self.vcs.reset_hard(self.repo_root, context.base_commit)
        return context

    def discard(self, task_id: str) -> None:
        with self._lock:
            self._retained.pop(task_id, None)
            self._bound.pop(task_id, None)
            branch = GitBackend.branch_for(task_id)
            handle = IsolatedCopy(
                self.contexts_root / branch.rsplit("/", maxsplit=1)[-1], branch, ""
            )
            try:
                self.vcs.remove_isolated_copy(handle)
                retained_branch = GitBackend.branch_for(task_id, retained=True)
                if self.vcs.branch_exists(retained_branch):
                    self.vcs.run_git(["branch", "-D", retained_branch])
            except VcsError as exc:
                raise self._vcs_error(exc, task_id) from exc

    def adopt(self, task_id: str, base_ref: str) -> ExecutionContext | None:
        with self._lock:
            existing = self._bound.get(task_id) or self._retained.get(task_id)
            if existing is not None:
                return existing
            branch = GitBackend.branch_for(task_id)
            path = self.contexts_root / branch.rsplit("/", maxsplit=1)[-1]
            if not path.exists() or not self.vcs.branch_exists(branch):
                return None
            try:
                base_commit = self.vcs.run_git(
                    ["merge-base", base_ref, branch]
                ).stdout.strip()
            except VcsError as exc:
                raise self._vcs_error(exc, task_id) from exc
            context = ExecutionContext(
                task_id=task_id,
                base_path=path.resolve(),
                branch_ref=branch,
                base_ref=base_ref,
                base_commit=base_commit,
            )
            self._retained[task_id] = context
            return context

    def create_checkpoint(self, label: str) -> str:
        try:
            return self.vcs.create_tag(label)
        except VcsError as exc:
            raise ContextError("vcs", f"checkpoint {label}: {exc}") from exc
