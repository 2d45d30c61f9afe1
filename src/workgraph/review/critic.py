from __future__ import annotations

import re

from workgraph.backends.base import WORKING_DIRECTORY_KEY, AgentBackend, BackendExecutionError
from workgraph.models import ExecutionContext, Task
from workgraph.review.scanners import Finding
from workgraph.verification.commands import extract_json_objects

SEVERITY_PATTERN = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b[:\s-]*(.*)", re.IGNORECASE)
ACTIONABLE_SEVERITIES = {"BLOCKER", "MAJOR"}

CRITIC_PROMPT = """
You are the code reviewer for one task of a larger plan.
Find correctness, maintainability, and security issues in the diff.
Classify findings as BLOCKER, MAJOR, MINOR, or SUGGESTION.
Prefer one JSON line: {"findings": [{"severity": "...", "category": "...",
"path": "...", "message": "..."}]}. Use category "security" for security issues.
""".strip()


def _finding_from_item(item: dict) -> Finding | None:
    severity = str(item.get("severity", "")).upper()
    if severity not in ACTIONABLE_SEVERITIES:
        return None
    category = "security" if str(item.get("category", "")).lower() == "security" else "critic"
    message = str(item.get("message") or item.get("title") or "unspecified finding").strip()
    line = item.get("line")
    return Finding(
        category,
        f"[{severity}] {message}",
        str(item.get("path") or ""),
        int(line) if isinstance(line, int) else 0,
    )


def parse_review_findings(content: str) -> list[Finding]:
    """Actionable (BLOCKER/MAJOR) findings from critic output.

    Structured JSON lines win; otherwise every line labelled with a severity
    is taken as one finding.
    """
    findings: list[Finding] = []
    parsed_structured = False
    for payload in extract_json_objects(content):
        items = payload.get("findings")
        if isinstance(items, list):
            parsed_structured = True
            candidates = [item for item in items if isinstance(item, dict)]
        elif "severity" in payload:
            parsed_structured = True
            candidates = [payload]
        else:
            continue
        for item in candidates:
            finding = _finding_from_item(item)
            if finding is not None:
                findings.append(finding)

    if parsed_structured:
        return findings

    for raw_line in content.splitlines():
        match = SEVERITY_PATTERN.search(raw_line)
        if not match:
            continue
        severity = match.group(1).upper()
        if severity in ACTIONABLE_SEVERITIES:
            detail = match.group(2).strip() or raw_line.strip()
            findings.append(Finding("critic", f"[{severity}] {detail}"))
    return findings


class AgentCritic:
    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def critique(
        self, context: ExecutionContext, task: Task, diff_text: str
    ) -> list[Finding]:
        instruction = (
            f"Review the change for task {task.id}: {task.title}\n\n"
            f"{task.description}\n\nDiff:\n{diff_text[-20000:]}"
        )
        run_context: dict[str, object] = {
            "task_id": task.id,
            WORKING_DIRECTORY_KEY: str(context.base_path),
        }
        if self.model:
            run_context["model"] = self.model
        try:
            content = await self.backend.complete(CRITIC_PROMPT, instruction, run_context)
        except BackendExecutionError as exc:
            return [Finding("critic", f"agent critic unavailable: {exc}")]
        return parse_review_findings(content)
