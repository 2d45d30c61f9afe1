from __future__ import annotations

from dataclasses import dataclass

from workgraph.config import BudgetConfig
from workgraph.models import BudgetClass, Diagnostic, DiagnosticCategory, Task


@dataclass(frozen=True, slots=True)
class BudgetCheck:
    actual: int
    limit: int
    effective_class: BudgetClass
    failures: tuple[Diagnostic, ...]


def classify(changed_lines: int, config: BudgetConfig) -> BudgetClass:
    if changed_lines <= config.small_max_lines:
        return BudgetClass.SMALL
    if changed_lines <= config.medium_max_lines:
        return BudgetClass.MEDIUM
    return BudgetClass.LARGE


def limit_for(budget_class: BudgetClass, config: BudgetConfig) -> int:
    return {
        BudgetClass.SMALL: config.small_max_lines,
        BudgetClass.MEDIUM: config.medium_max_lines,
        BudgetClass.LARGE: config.large_max_lines,
    }[budget_class]


def requires_prior_approval(task: Task) -> bool:
    return task.budget_class == BudgetClass.LARGE and not task.approved


def check_budget(task: Task, added: int, deleted: int, config: BudgetConfig) -> BudgetCheck:
    """Diff-size gate: medium needs a justification, large needs prior approval."""
    actual = added + deleted
    effective = classify(actual, config)
    command = f"git diff --numstat <base>..HEAD  # {added} added, {deleted} deleted"
    failures: list[Diagnostic] = []

    if requires_prior_approval(task):
        failures.append(
            Diagnostic(
                DiagnosticCategory.BUDGET,
                f"Task {task.id} is classed large and has no prior human approval.",
                command,
            )
        )
    # Approval covers every tier below the hard cap.
    if effective == BudgetClass.MEDIUM and not (task.approved or task.justification.strip()):
        failures.append(
            Diagnostic(
                DiagnosticCategory.BUDGET,
                f"{actual} changed lines exceed the small budget "
                f"({config.small_max_lines}); attach a justification.",
                command,
            )
        )
    if effective == BudgetClass.LARGE and not task.approved:
        failures.append(
            Diagnostic(
                DiagnosticCategory.BUDGET,
                f"{actual} changed lines exceed the medium budget "
                f"({config.medium_max_lines}); large changes need prior human approval.",
                command,
            )
        )
    if actual > config.large_max_lines:
        failures.append(
            Diagnostic(
                DiagnosticCategory.BUDGET,
                f"{actual} changed lines exceed the hard cap of {config.large_max_lines}.",
                command,
            )
        )
    return BudgetCheck(
        actual=actual,
        limit=limit_for(task.budget_class, config),
        effective_class=effective,
        failures=tuple(failures),
    )
