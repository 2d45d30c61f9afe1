from __future__ import annotations

import logging

from workgraph.config import WorkgraphConfig
from workgraph.models import (
    Diagnostic,
    DiagnosticCategory,
    ExecutionContext,
    Task,
    VerificationResult,
)
from workgraph.paths import is_test_path
from workgraph.verification.budget import check_budget, limit_for
from workgraph.verification.commands import InfraFault, run_command
from workgraph.verification.proofs import ProofOutcome, command_failure, strategy_for
from workgraph.workspace.contexts import ContextError, ContextManager

logger = logging.getLogger(__name__)


class VerificationGate:
    """Runs the proof strategy, then lint/type checks, then the diff budget.

    All three stages run even when an earlier one fails. A tool that cannot
    be started at all is reported as a single ``infra`` diagnostic instead.
    """

    def __init__(self, config: WorkgraphConfig, contexts: ContextManager) -> None:
        self.config = config
        self.contexts = contexts

    def verify(self, context: ExecutionContext, task: Task) -> VerificationResult:
        limit = limit_for(task.budget_class, self.config.budget)
        if not context.base_path.is_dir():
            return self._infra_result(
                f"Execution context directory is missing: {context.base_path}",
                command=f"test -d {context.base_path}",
                limit=limit,
            )
        try:
            proof = strategy_for(task.proof_type, self.config).run(context, task)
            static_failures = self._static_checks(context)
        except InfraFault as exc:
            logger.warning("Infra fault while verifying %s: %s", task.id, exc)
            return self._infra_result(str(exc), command=exc.command, limit=limit)

        try:
            added, deleted, changed = self.contexts.diff_stats(context)
        except ContextError as exc:
            return self._infra_result(
                str(exc), command=f"git diff --numstat {context.base_commit}", limit=limit
            )
        budget = check_budget(task, added, deleted, self.config.budget)

        failures = [*proof.failures, *static_failures, *budget.failures]
        artifacts = self._artifacts(context, task, proof, changed)
        result = VerificationResult(
            passed=not failures,
            budget_actual=budget.actual,
            budget_limit=budget.limit,
            failures=tuple(failures),
            artifacts=artifacts,
        )
        logger.debug(
            "Verified %s: passed=%s failures=%d", task.id, result.passed, len(result.failures)
        )
        return result

    def _infra_result(self, message: str, *, command: str, limit: int) -> VerificationResult:
        return VerificationResult(
            passed=False,
            budget_actual=0,
            budget_limit=limit,
            failures=(Diagnostic(DiagnosticCategory.INFRA, message, command),),
        )

    def _static_checks(self, context: ExecutionContext) -> list[Diagnostic]:
        failures: list[Diagnostic] = []
        checks = (
            (DiagnosticCategory.LINT, "Lint", self.config.project.lint_command),
            (DiagnosticCategory.TYPE, "Type check", self.config.project.type_check_command),
        )
        for category, label, command in checks:
            if not command.strip():
                continue
            result = run_command(command, context.base_path)
            if not result.ok:
                failures.append(command_failure(category, label, result))
        return failures

    def _artifacts(
        self,
        context: ExecutionContext,
        task: Task,
        proof: ProofOutcome,
        changed: list[str],
    ) -> tuple[str, ...]:
        artifacts = set(proof.artifacts)
        haystacks = list(proof.evidence)
        for path in changed:
            if not is_test_path(path):
                continue
            artifacts.add(f"test:{path}")
            file_path = context.base_path / path
            if file_path.is_file():
                haystacks.append(file_path.read_text(encoding="utf-8", errors="replace"))
        for scenario in task.scenarios:
            if any(scenario in text for text in haystacks):
                artifacts.add(f"scenario:{scenario}")
        return tuple(sorted(artifacts))
