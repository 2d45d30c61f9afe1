from __future__ import annotations

import asyncio
import logging

from workgraph.config import WorkgraphConfig
from workgraph.models import (
    Diagnostic,
    ExecutionContext,
    ReviewVerdict,
    Task,
    VerificationResult,
)
from workgraph.review.critic import AgentCritic
from workgraph.review.scanners import (
    Finding,
    parse_added_lines,
    scan_quality,
    scan_scope,
    scan_security,
)
from workgraph.verification.gate import VerificationGate
from workgraph.workspace.contexts import ContextError, ContextManager

logger = logging.getLogger(__name__)


def describe(diagnostic: Diagnostic) -> str:
    suffix = f" (reproduce: {diagnostic.command})" if diagnostic.command else ""
    return f"[{diagnostic.category}] {diagnostic.message}{suffix}"


def _fingerprint(result: VerificationResult) -> tuple:
    return result.passed, result.failures


class ReviewGate:
    """Produces the verdict for one task.

    Pass 1 never trusts the supplied ``VerificationResult``: it re-verifies
    and reports a mismatch as stale. Pass 2 runs only on a clean Pass 1.
    Any security finding escalates to a human.
    """

    def __init__(
        self,
        config: WorkgraphConfig,
        contexts: ContextManager,
        verification: VerificationGate,
        critic: AgentCritic | None = None,
    ) -> None:
        self.config = config
        self.contexts = contexts
        self.verification = verification
        self.critic = critic

    async def review(
        self, context: ExecutionContext, task: Task, verification: VerificationResult
    ) -> ReviewVerdict:
        fresh = await asyncio.to_thread(self.verification.verify, context, task)
        reasons = self.deterministic_pass(task, verification, fresh)
        if reasons:
            return ReviewVerdict.needs_changes(reasons)

        try:
            findings = await asyncio.to_thread(self.judgement_pass, context, task)
        except ContextError as exc:
            return ReviewVerdict.needs_changes([f"review could not read the diff: {exc}"])
        if self.critic is not None and self.config.review.use_agent_critic:
            diff_text = await asyncio.to_thread(self.contexts.diff_text, context)
            findings.extend(await self.critic.critique(context, task, diff_text))

        security = [finding.reason for finding in findings if finding.category == "security"]
        if security:
            logger.warning("Security findings for %s: %d", task.id, len(security))
            return ReviewVerdict.blocked_for_human(security)
        if findings:
            return ReviewVerdict.needs_changes([finding.reason for finding in findings])
        return ReviewVerdict.approve()

    def deterministic_pass(
        self, task: Task, supplied: VerificationResult, fresh: VerificationResult
    ) -> list[str]:
        reasons: list[str] = []
        if _fingerprint(supplied) != _fingerprint(fresh):
            reasons.append(
                "supplied verification result is stale: "
                f"passed={supplied.passed} with {len(supplied.failures)} failure(s), "
                f"re-run gives passed={fresh.passed} with {len(fresh.failures)} failure(s)"
            )
        reasons.extend(describe(item) for item in fresh.failures)
        if reasons:
            return reasons

        artifacts = set(fresh.artifacts)
        unmapped = [
            scenario for scenario in task.scenarios if f"scenario:{scenario}" not in artifacts
        ]
        if unmapped:
            reasons.append(
                "acceptance scenarios without passing evidence: " + ", ".join(unmapped)
            )
        return reasons

    def judgement_pass(self, context: ExecutionContext, task: Task) -> list[Finding]:
        changed = self.contexts.changed_files(context)
        added = parse_added_lines(self.contexts.diff_text(context))
        settings = self.config.review
        findings: list[Finding] = []
        findings.extend(scan_security(added, changed, settings))
        findings.extend(
            scan_scope(task, changed, checklist_dir=self.config.project.checklist_dir)
        )
        findings.extend(scan_quality(added, context.base_path, settings))
        return findings
