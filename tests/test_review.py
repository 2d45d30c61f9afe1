import asyncio
import shlex
import subprocess
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from workgraph.backends.base import AgentBackend, BackendExecutionError
from workgraph.config import ReviewConfig, WorkgraphConfig
from workgraph.models import ExecutionContext, Task, VerdictKind, VerificationResult
from workgraph.review import AgentCritic, ReviewGate, parse_added_lines, parse_review_findings
from workgraph.review.scanners import scan_quality, scan_scope, scan_security
from workgraph.verification import VerificationGate
from workgraph.workspace import ContextManager


class ScriptedBackend(AgentBackend):
    def __init__(self, reply: str = "", *, fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, context, tools
        self.prompts.append(user_prompt)
        if self.fail:
            raise BackendExecutionError("offline", backend="fake", retriable=False)
        yield self.reply


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _git(repo_path, "init", "-b", "main")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "commit.gpgsign", "false")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "README.md")
    _git(repo_path, "commit", "-m", "seed")


def _setup(
    tmp_path: Path, files: dict[str, str], *, critic: AgentCritic | None = None
) -> tuple[ReviewGate, VerificationGate, ExecutionContext]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    config = WorkgraphConfig.default()
    config.project.test_command = f"{shlex.quote(sys.executable)} -c {shlex.quote('print(1)')}"
    config.project.lint_command = ""
    config.project.type_check_command = ""
    config.review.use_agent_critic = critic is not None
    contexts = ContextManager(repo)
    context = contexts.acquire("t1", "main")
    for path, text in files.items():
        target = context.base_path / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    contexts.commit(context, "work")
    verification = VerificationGate(config, contexts)
    return ReviewGate(config, contexts, verification, critic=critic), verification, context


def _review(gate: ReviewGate, verification: VerificationGate, context, task: Task):
    result = verification.verify(context, task)
    return asyncio.run(gate.review(context, task, result))


def test_clean_change_is_approved(tmp_path: Path) -> None:
    gate, verification, context = _setup(
        tmp_path,
        {"src/app.py": "def add(a, b):\n    return a + b\n", "tests/test_app.py": "# s1\n"},
    )
    task = Task(id="t1", title="T", scenarios=["s1"], scope=["src/*"])

    verdict = _review(gate, verification, context, task)

    assert verdict.kind == VerdictKind.APPROVE


def test_stale_verification_result_is_not_trusted(tmp_path: Path) -> None:
    gate, _, context = _setup(tmp_path, {"src/app.py": "X = 1\n"})
    stale = VerificationResult(passed=False, budget_actual=0, budget_limit=199)

    verdict = asyncio.run(gate.review(context, Task(id="t1", title="T"), stale))

    assert verdict.kind == VerdictKind.NEEDS_CHANGES
    assert "stale" in verdict.reasons[0]


def test_scenario_without_evidence_needs_changes(tmp_path: Path) -> None:
    gate, verification, context = _setup(tmp_path, {"src/app.py": "X = 1\n"})
    task = Task(id="t1", title="T", scenarios=["checkout_flow"])

    verdict = _review(gate, verification, context, task)

    assert verdict.kind == VerdictKind.NEEDS_CHANGES
    assert "checkout_flow" in verdict.reasons[0]


def test_security_finding_escalates_to_a_human(tmp_path: Path) -> None:
    gate, verification, context = _setup(
        tmp_path, {"src/app.py": "def run(expr):\n    return eval(expr)\n"}
    )

    verdict = _review(gate, verification, context, Task(id="t1", title="T"))

    assert verdict.kind == VerdictKind.BLOCKED_FOR_HUMAN
    assert any("eval() call" in reason for reason in verdict.reasons)


def test_out_of_scope_change_needs_changes(tmp_path: Path) -> None:
    gate, verification, context = _setup(
        tmp_path, {"src/app.py": "X = 1\n", "docs/notes.md": "hello\n"}
    )
    task = Task(id="t1", title="T", scope=["src/*"])

    verdict = _review(gate, verification, context, task)

    assert verdict.kind == VerdictKind.NEEDS_CHANGES
    assert verdict.reasons == ("scope: docs/notes.md changed outside the task scope ['src/*']",)


def test_critic_blocker_needs_changes(tmp_path: Path) -> None:
    backend = ScriptedBackend("BLOCKER: missing input validation\nMINOR: naming")
    gate, verification, context = _setup(
        tmp_path, {"src/app.py": "X = 1\n"}, critic=AgentCritic(backend)
    )

    verdict = _review(gate, verification, context, Task(id="t1", title="T"))

    assert verdict.kind == VerdictKind.NEEDS_CHANGES
    assert verdict.reasons == ("critic: [BLOCKER] missing input validation",)
    assert "+X = 1" in backend.prompts[0]


def test_unavailable_critic_is_not_an_approval(tmp_path: Path) -> None:
    critic = AgentCritic(ScriptedBackend(fail=True))
    gate, verification, context = _setup(tmp_path, {"src/app.py": "X = 1\n"}, critic=critic)

    verdict = _review(gate, verification, context, Task(id="t1", title="T"))

    assert verdict.kind == VerdictKind.NEEDS_CHANGES
    assert "agent critic unavailable" in verdict.reasons[0]


def test_parse_review_findings_prefers_structured_json() -> None:
    content = (
        "thinking...\n"
        '{"findings": [{"severity": "major", "category": "security", "path": "a.py", '
        '"line": 3, "message": "token logged"}, {"severity": "minor", "message": "nit"}]}\n'
        "BLOCKER: ignored because JSON was present"
    )

    findings = parse_review_findings(content)

    assert [finding.reason for finding in findings] == ["security: a.py:3 [MAJOR] token logged"]


def test_security_scanner_flags_secrets_forbidden_paths_and_open_routes() -> None:
    diff = (
        "diff --git a/src/api.py b/src/api.py\n"
        "+++ b/src/api.py\n"
        "@@ -0,0 +1,3 @@\n"
        '+API_KEY = "sk_live_abcdefgh1234"\n'
        '+@app.get("/admin")\n'
        "+def admin():\n"
        "+++ b/tests/test_api.py\n"
        "@@ -0,0 +1 @@\n"
        "+eval('1')\n"
    )
    added = parse_added_lines(diff)

    findings = scan_security(added, ["src/api.py", ".env", "tests/test_api.py"], ReviewConfig())
    reasons = [finding.reason for finding in findings]

    assert "security: .env touches forbidden path (matched .env)" in reasons
    assert "security: src/api.py:1 possible hard-coded credential" in reasons
    assert "security: src/api.py:2 new route handler without an authentication check" in reasons
    assert not any("tests/test_api.py" in reason for reason in reasons)


def test_added_line_that_looks_like_a_file_header_stays_in_its_file() -> None:
    diff = (
        "diff --git a/src/config.py b/src/config.py\n"
        "+++ b/src/config.py\n"
        "@@ -3 +3,2 @@\n"
        "-OLD = 1\n"
        '+++ API_KEY = "sk_live_abcdefgh1234"\n'
        "+NEW = 2\n"
    )

    added = parse_added_lines(diff)

    assert list(added) == ["src/config.py"]
    assert [line.number for line in added["src/config.py"]] == [3, 4]
    assert added["src/config.py"][0].text.startswith("++ API_KEY")
    reasons = [f.reason for f in scan_security(added, ["src/config.py"], ReviewConfig())]
    assert "security: src/config.py:3 possible hard-coded credential" in reasons


def test_scope_scanner_exempts_tests_and_the_task_checklist() -> None:
    task = Task(id="t1", title="T", scope=["src/billing/"])

    findings = scan_scope(
        task,
        ["src/billing/invoice.py", "tests/test_invoice.py", "checklists/t1.md", "setup.cfg"],
        checklist_dir="checklists",
    )

    assert [finding.path for finding in findings] == ["setup.cfg"]
    assert scan_scope(Task(id="t2", title="T"), ["anything.py"], checklist_dir="checklists") == []


def test_quality_scanner_flags_long_functions_duplicates_and_layer_rules(tmp_path: Path) -> None:
    body = "".join(f"    value_{index} = {index}\n" for index in range(12))
    source = f"from sqlalchemy import select\n\ndef long_one():\n{body}    return 1\n"
    (tmp_path / "src" / "domain").mkdir(parents=True)
    (tmp_path / "src" / "domain" / "model.py").write_text(source, encoding="utf-8")
    block = "".join(f"+    step_{index}()\n" for index in range(6))
    diff = (
        "+++ b/src/domain/model.py\n@@ -0,0 +1,16 @@\n"
        + "".join(f"+{line}\n" for line in source.splitlines())
        + f"+++ b/src/a.py\n@@ -0,0 +1,6 @@\n{block}"
        + f"+++ b/src/b.py\n@@ -0,0 +1,6 @@\n{block}"
    )
    config = ReviewConfig(
        max_function_lines=10, duplicate_block_lines=6, layer_rules=["src/domain/*:sqlalchemy"]
    )

    findings = scan_quality(parse_added_lines(diff), tmp_path, config)
    reasons = [finding.reason for finding in findings]

    assert "quality: src/domain/model.py:3 function long_one is 14 lines long (max 10)" in reasons
    assert "quality: src/b.py:1 6-line block duplicated from src/a.py:1" in reasons
    assert any("imports sqlalchemy" in reason for reason in reasons)
    assert len(reasons) == 3
