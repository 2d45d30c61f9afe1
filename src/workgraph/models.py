from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskState(StrEnum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    NEEDS_CHANGES = "needs_changes"
    BLOCKED_FOR_HUMAN = "blocked_for_human"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.DONE, TaskState.FAILED, TaskState.BLOCKED_FOR_HUMAN})
BLOCKING_STATES = frozenset({TaskState.FAILED, TaskState.BLOCKED_FOR_HUMAN})


class ProofType(StrEnum):
    UNIT_TEST = "unit_test"
    INTEGRATION_TEST = "integration_test"
    MANUAL_CHECKLIST = "manual_checklist"
    INFRA_STATE = "infra_state"


class BudgetClass(StrEnum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def rank(self) -> int:
        return ("small", "medium", "large").index(self.value)


class DiagnosticCategory(StrEnum):
    TEST = "test"
    LINT = "lint"
    TYPE = "type"
    BUDGET = "budget"
    COVERAGE = "coverage"
    INFRA = "infra"


class VerdictKind(StrEnum):
    APPROVE = "approve"
    NEEDS_CHANGES = "needs_changes"
    BLOCKED_FOR_HUMAN = "blocked_for_human"


@dataclass(slots=True)
class Task:
    id: str
    title: str
    state: TaskState = TaskState.PENDING
    depends_on: list[str] = field(default_factory=list)
    proof_type: ProofType = ProofType.UNIT_TEST
    budget_class: BudgetClass = BudgetClass.SMALL
    parent_id: str | None = None
    description: str = ""
    scenarios: list[str] = field(default_factory=list)
    scope: list[str] = field(default_factory=list)
    justification: str = ""
    approved: bool = False
    notes: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.value,
            "depends_on": list(self.depends_on),
            "proof_type": self.proof_type.value,
            "budget_class": self.budget_class.value,
            "parent_id": self.parent_id,
            "description": self.description,
            "scenarios": list(self.scenarios),
            "scope": list(self.scope),
            "justification": self.justification,
            "approved": self.approved,
            "notes": list(self.notes),
            "blocked_by": list(self.blocked_by),
            "reason": self.reason,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            raise ValueError("Task payload is missing an id.")
        return cls(
            id=task_id,
            title=str(payload.get("title") or task_id),
            state=TaskState(payload.get("state") or TaskState.PENDING),
            depends_on=[str(item) for item in payload.get("depends_on") or []],
            proof_type=ProofType(payload.get("proof_type") or ProofType.UNIT_TEST),
            budget_class=BudgetClass(payload.get("budget_class") or BudgetClass.SMALL),
            parent_id=payload.get("parent_id"),
            description=str(payload.get("description") or ""),
            scenarios=[str(item) for item in payload.get("scenarios") or []],
            scope=[str(item) for item in payload.get("scope") or []],
            justification=str(payload.get("justification") or ""),
            approved=bool(payload.get("approved", False)),
            notes=[str(item) for item in payload.get("notes") or []],
            blocked_by=[str(item) for item in payload.get("blocked_by") or []],
            reason=payload.get("reason"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class ExecutionContext:
    task_id: str
    base_path: Path
    branch_ref: str
    base_ref: str
    base_commit: str
    created_at: str = field(default_factory=utcnow_iso)
    inline: bool = False


@dataclass(frozen=True, slots=True)
class Batch:
    index: int
    task_ids: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.task_ids)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    category: DiagnosticCategory
    message: str
    command: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"category": self.category.value, "message": self.message, "command": self.command}


@dataclass(frozen=True, slots=True)
class VerificationResult:
    passed: bool
    budget_actual: int
    budget_limit: int
    failures: tuple[Diagnostic, ...] = ()
    artifacts: tuple[str, ...] = ()

    def categories(self) -> set[DiagnosticCategory]:
        return {item.category for item in self.failures}

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "budget_actual": self.budget_actual,
            "budget_limit": self.budget_limit,
            "failures": [item.to_dict() for item in self.failures],
            "artifacts": list(self.artifacts),
        }


@dataclass(frozen=True, slots=True)
class ReviewVerdict:
    kind: VerdictKind
    reasons: tuple[str, ...] = ()

    @classmethod
    def approve(cls) -> ReviewVerdict:
        return cls(VerdictKind.APPROVE)

    @classmethod
    def needs_changes(cls, reasons: list[str] | tuple[str, ...]) -> ReviewVerdict:
        return cls(VerdictKind.NEEDS_CHANGES, tuple(reasons))

    @classmethod
    def blocked_for_human(cls, reasons: list[str] | tuple[str, ...]) -> ReviewVerdict:
        return cls(VerdictKind.BLOCKED_FOR_HUMAN, tuple(reasons))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "reasons": list(self.reasons)}


@dataclass(frozen=True, slots=True)
class IntegrationResult:
    merged: bool
    conflicting_paths: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    state: TaskState
    reason: str = ""
    command: str = ""
    review_cycles: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "reason": self.reason,
            "command": self.command,
            "review_cycles": self.review_cycles,
        }


RUN_EXIT_CODES = {
    "complete": 0,
    "partial": 1,
    "paused": 1,
    "aborted": 2,
    "invalid": 3,
}


@dataclass(slots=True)
class RunReport:
    run_id: str
    root_id: str
    status: str
    started_at: str
    ended_at: str = ""
    batches: list[list[str]] = field(default_factory=list)
    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    integrated: list[str] = field(default_factory=list)
    conflicts: dict[str, list[str]] = field(default_factory=dict)
    message: str = ""

    @property
    def exit_code(self) -> int:
        return RUN_EXIT_CODES.get(self.status, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "root_id": self.root_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "batches": [list(batch) for batch in self.batches],
            "outcomes": {key: value.to_dict() for key, value in self.outcomes.items()},
            "integrated": list(self.integrated),
            "conflicts": {key: list(value) for key, value in self.conflicts.items()},
            "message": self.message,
        }
