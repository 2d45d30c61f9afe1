from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class VcsError(RuntimeError):
    """Raised when a git command fails."""


@dataclass(frozen=True, slots=True)
class IsolatedCopy:
    path: Path
    branch: str
    base_commit: str


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    merged: bool
    conflicts: tuple[str, ...] = ()


class GitBackend:
    BRANCH_PREFIX = "workgraph"

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def run_git(
        self, args: list[str], *, cwd: Path | None = None, check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VcsError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def current_branch(self, cwd: Path | None = None) -> str:
        return self.run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).stdout.strip()

    def rev_parse(self, ref: str, cwd: Path | None = None) -> str:
        return self.run_git(["rev-parse", ref], cwd=cwd).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self.run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def dirty_paths(self, cwd: Path | None = None) -> list[str]:
        proc = self.run_git(["status", "--porcelain"], cwd=cwd)
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            candidate = line[3:].strip()
            if " -> " in candidate:
                candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
            paths.append(candidate)
        return paths

    @staticmethod
    def branch_for(task_id: str, *, retained: bool = False) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "-", task_id.strip()).strip("-.") or "task"
        kind = "retained/" if retained else ""
        return f"{GitBackend.BRANCH_PREFIX}/{kind}{safe}"

    def create_isolated_copy(self, base_ref: str, task_id: str, root: Path) -> IsolatedCopy:
        branch = self.branch_for(task_id)
        path = root / branch.rsplit("/", maxsplit=1)[-1]
        if path.exists() or self.branch_exists(branch):
            raise FileExistsError(f"isolated copy already exists for {task_id}: {branch}")
        base_commit = self.rev_parse(base_ref)
        root.mkdir(parents=True, exist_ok=True)
        self.run_git(["worktree", "add", "--quiet", "-b", branch, str(path), base_commit])
        return IsolatedCopy(path=path.resolve(), branch=branch, base_commit=base_commit)

    def remove_isolated_copy(self, handle: IsolatedCopy, *, delete_branch: bool = True) -> None:
        self.run_git(["worktree", "remove", "--force", str(handle.path)], check=False)
        self.run_git(["worktree", "prune"], check=False)
        if delete_branch and self.branch_exists(handle.branch):
            self.run_git(["branch", "-D", handle.branch])

    def merge_into(self, handle: IsolatedCopy, base_ref: str, *, message: str) -> MergeOutcome:
        current = self.current_branch()
        if current != base_ref:
            raise VcsError(f"Base working copy is on '{current}', expected '{base_ref}'.")
        proc = self.run_git(
            ["merge", "--no-ff", "--no-edit", "-m", message, handle.branch], check=False
        )
        if proc.returncode == 0:
            return MergeOutcome(merged=True)
        unmerged = self.run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        conflicts = tuple(line.strip() for line in unmerged.stdout.splitlines() if line.strip())
        self.run_git(["merge", "--abort"], check=False)
        if not conflicts:
            raise VcsError(proc.stderr.strip() or proc.stdout.strip() or "git merge failed")
        return MergeOutcome(merged=False, conflicts=conflicts)

    def commit_all(self, cwd: Path, message: str) -> bool:
        if not self.dirty_paths(cwd):
            return False
        self.run_git(["add", "-A"], cwd=cwd)
        self.run_git(["commit", "--quiet", "-m", message], cwd=cwd)
        return True

    def numstat(self, cwd: Path, base_commit: str) -> list[tuple[int, int, str]]:
        proc = self.run_git(["diff", "--numstat", f"{base_commit}..HEAD"], cwd=cwd)
        rows: list[tuple[int, int, str]] = []
        for line in proc.stdout.splitlines():
            parts = line.split("\t", maxsplit=2)
            if len(parts) != 3:
                continue
            added, deleted, path = parts
            # Binary files report "-" for both counts.
            rows.append(
                (
                    int(added) if added.isdigit() else 0,
                    int(deleted) if deleted.isdigit() else 0,
                    path,
                )
            )
        return rows

    def diff_text(self, cwd: Path, base_commit: str) -> str:
        return self.run_git(["diff", "--unified=0", f"{base_commit}..HEAD"], cwd=cwd).stdout

    def reset_hard(self, cwd: Path, commit: str) -> None:
        self.run_git(["reset", "--quiet", "--hard", commit], cwd=cwd)
        self.run_git(["clean", "-fdq"], cwd=cwd)

    def create_branch(self, branch: str, start_point: str, *, force: bool = False) -> None:
        self.run_git(["branch", *(["-f"] if force else []), branch, start_point])

    def create_tag(self, label: str) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]+", "-", label.strip().lower()) or "checkpoint"
        tag = f"{self.BRANCH_PREFIX}/{safe}-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"
        self.run_git(["tag", "-f", tag])
        return tag
