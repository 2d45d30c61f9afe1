from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from workgraph.config import WorkgraphConfig
from workgraph.models import Diagnostic, DiagnosticCategory, ExecutionContext, ProofType, Task
from workgraph.verification.commands import (
    CommandResult,
    extract_coverage_percent,
    extract_json_objects,
    run_command,
)

CHECKLIST_ITEM_PATTERN = re.compile(r"^\s*[-*]\s*\[( |x|X)\]\s*(.+?)\s*$")


@dataclass(slots=True)
class ProofOutcome:
    failures: list[Diagnostic] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    evidence: list[str] = field(default_factory=list)


def command_failure(category: DiagnosticCategory, label: str, result: CommandResult) -> Diagnostic:
    details = result.failure_lines()
    message = f"{label} failed with exit code {result.exit_code}."
    if details:
        message += " " + " | ".join(details)
    return Diagnostic(category, message, result.command)


class ProofStrategy(ABC):
    proof_type: ProofType

    def __init__(self, config: WorkgraphConfig) -> None:
        self.config = config

    @abstractmethod
    def run(self, context: ExecutionContext, task: Task) -> ProofOutcome:
        """Execute the proof; may raise ``InfraFault`` for tooling faults."""


class UnitTestProof(ProofStrategy):
    proof_type = ProofType.UNIT_TEST
    label = "Unit tests"

    def command(self) -> str:
        return self.config.project.test_command

    def run(self, context: ExecutionContext, task: Task) -> ProofOutcome:
        outcome = ProofOutcome()
        command = self.command().strip()
        if not command:
            outcome.failures.append(
                Diagnostic(DiagnosticCategory.TEST, f"No command configured for {self.label}.")
            )
            return outcome
        result = run_command(command, context.base_path)
        outcome.artifacts.append(f"command:{result.command}")
        outcome.evidence.append(result.output)
        if not result.ok:
            outcome.failures.append(command_failure(DiagnosticCategory.TEST, self.label, result))
            return outcome
        threshold = int(self.config.workflow.test_coverage_threshold)
        if threshold > 0:
            percent = extract_coverage_percent(result)
            if percent is None or percent < threshold:
                outcome.failures.append(
                    Diagnostic(
                        DiagnosticCategory.COVERAGE,
                        f"Coverage threshold failed: required {threshold}%, got {percent}.",
                        result.command,
                    )
                )
        return outcome


class IntegrationTestProof(UnitTestProof):
    proof_type = ProofType.INTEGRATION_TEST
    label = "Integration tests"

    def command(self) -> str:
        return self.config.project.integration_test_command or self.config.project.test_command


class ManualChecklistProof(ProofStrategy):
    """Every line of ``<checklist_dir>/<task>.md`` must be ticked by a person."""

    proof_type = ProofType.MANUAL_CHECKLIST

    def run(self, context: ExecutionContext, task: Task) -> ProofOutcome:
        outcome = ProofOutcome()
        relative = f"{self.config.project.checklist_dir.rstrip('/')}/{task.id}.md"
        checklist = context.base_path / relative
        command = f"cat {relative}"
        if not checklist.is_file():
            outcome.failures.append(
                Diagnostic(DiagnosticCategory.TEST, f"Checklist {relative} is missing.", command)
            )
            return outcome
        items = 0
        for line in checklist.read_text(encoding="utf-8", errors="replace").splitlines():
            match = CHECKLIST_ITEM_PATTERN.match(line)
            if not match:
                continue
            items += 1
            text = match.group(2)
            if match.group(1) == " ":
                outcome.failures.append(
                    Diagnostic(
                        DiagnosticCategory.TEST, f"Unchecked checklist item: {text}", command
                    )
                )
            else:
                outcome.artifacts.append(f"checklist:{text}")
                outcome.evidence.append(text)
        if items == 0:
            outcome.failures.append(
                Diagnostic(DiagnosticCategory.TEST, f"Checklist {relative} has no items.", command)
            )
        return outcome


class InfraStateProof(ProofStrategy):
    """Runs the infra assertion command; JSON lines ``{"assertion", "ok"}`` are itemised."""

    proof_type = ProofType.INFRA_STATE

    def run(self, context: ExecutionContext, task: Task) -> ProofOutcome:
        outcome = ProofOutcome()
        command = self.config.project.infra_check_command.strip()
        if not command:
            outcome.failures.append(
                Diagnostic(DiagnosticCategory.TEST, "No infra_check_command configured.")
            )
            return outcome
        result = run_command(command, context.base_path)
        outcome.evidence.append(result.output)
        assertions = 0
        for payload in extract_json_objects(result.output):
            name = payload.get("assertion")
            if not isinstance(name, str):
                continue
            assertions += 1
            if payload.get("ok") is True:
                outcome.artifacts.append(f"assertion:{name}")
            else:
                detail = payload.get("message") or "assertion failed"
                outcome.failures.append(
                    Diagnostic(
                        DiagnosticCategory.TEST, f"Infra assertion {name}: {detail}", command
                    )
                )
        if not result.ok and not outcome.failures:
            outcome.failures.append(
                command_failure(DiagnosticCategory.TEST, "Infra state check", result)
            )
        if result.ok and assertions == 0:
            outcome.artifacts.append(f"command:{result.command}")
        return outcome


PROOF_STRATEGIES: dict[ProofType, type[ProofStrategy]] = {
    ProofType.UNIT_TEST: UnitTestProof,
    ProofType.INTEGRATION_TEST: IntegrationTestProof,
    ProofType.MANUAL_CHECKLIST: ManualChecklistProof,
    ProofType.INFRA_STATE: InfraStateProof,
}


def strategy_for(proof_type: ProofType, config: WorkgraphConfig) -> ProofStrategy:
    return PROOF_STRATEGIES[proof_type](config)
