import shlex
import subprocess
import sys
from pathlib import Path

import pytest

from workgraph.config import BudgetConfig, WorkgraphConfig
from workgraph.models import (
    BudgetClass,
    DiagnosticCategory,
    ExecutionContext,
    ProofType,
    Task,
)
from workgraph.verification import (
    InfraFault,
    VerificationGate,
    check_budget,
    classify,
    run_command,
)
from workgraph.verification.commands import extract_coverage_percent
from workgraph.workspace import ContextManager


def _python(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


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


def _config() -> WorkgraphConfig:
    config = WorkgraphConfig.default()
    config.project.test_command = _python("print('3 passed')")
    config.project.lint_command = ""
    config.project.type_check_command = ""
    return config


def _workspace(tmp_path: Path) -> tuple[ContextManager, ExecutionContext]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    contexts = ContextManager(repo)
    return contexts, contexts.acquire("t1", "main")


def _write(contexts: ContextManager, context: ExecutionContext, path: str, text: str) -> None:
    target = context.base_path / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    contexts.commit(context, f"write {path}")


def test_budget_classes_follow_thresholds() -> None:
    config = BudgetConfig()

    assert classify(199, config) == BudgetClass.SMALL
    assert classify(200, config) == BudgetClass.MEDIUM
    assert classify(400, config) == BudgetClass.MEDIUM
    assert classify(401, config) == BudgetClass.LARGE


def test_medium_diff_needs_a_justification() -> None:
    task = Task(id="t", title="T", budget_class=BudgetClass.MEDIUM)

    unjustified = check_budget(task, 250, 0, BudgetConfig())
    task.justification = "touches the whole parser"
    justified = check_budget(task, 250, 0, BudgetConfig())

    assert [item.category for item in unjustified.failures] == [DiagnosticCategory.BUDGET]
    assert "justification" in unjustified.failures[0].message
    assert justified.failures == ()
    assert justified.limit == 400


def test_large_diff_needs_approval_and_respects_the_hard_cap() -> None:
    task = Task(id="t", title="T", budget_class=BudgetClass.LARGE, approved=True)

    assert check_budget(task, 1500, 0, BudgetConfig()).failures == ()
    capped = check_budget(task, 1800, 400, BudgetConfig())
    assert len(capped.failures) == 1
    assert "hard cap" in capped.failures[0].message

    task.approved = False
    unapproved = check_budget(task, 10, 0, BudgetConfig())
    assert "prior human approval" in unapproved.failures[0].message


def test_approved_large_task_with_a_medium_sized_diff_passes() -> None:
    task = Task(id="t", title="T", budget_class=BudgetClass.LARGE, approved=True)

    check = check_budget(task, 250, 50, BudgetConfig())

    assert check.failures == ()
    assert check.actual == 300
    assert check.effective_class == BudgetClass.MEDIUM


def test_run_command_reports_missing_tools_as_infra_faults(tmp_path: Path) -> None:
    with pytest.raises(InfraFault):
        run_command("definitely-not-a-real-tool-xyz --version", tmp_path)
    with pytest.raises(InfraFault):
        run_command("definitely-not-a-real-tool-xyz | cat", tmp_path)


def test_coverage_is_read_from_pytest_cov_total_row(tmp_path: Path) -> None:
    result = run_command(_python("print('TOTAL   120   12   90%')"), tmp_path)

    assert extract_coverage_percent(result) == 90


def test_passing_unit_proof_with_scenario_evidence(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    _write(contexts, context, "src/feature.py", "VALUE = 1\n")
    _write(contexts, context, "tests/test_feature.py", "def test_s1_login():\n    pass\n")
    task = Task(id="t1", title="T", scenarios=["s1_login"])

    result = VerificationGate(_config(), contexts).verify(context, task)

    assert result.passed is True
    assert result.budget_actual == 3
    assert result.budget_limit == 199
    assert "test:tests/test_feature.py" in result.artifacts
    assert "scenario:s1_login" in result.artifacts
    assert any(item.startswith("command:") for item in result.artifacts)


def test_verification_is_repeatable_on_an_unchanged_context(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    _write(contexts, context, "src/feature.py", "VALUE = 1\n")
    gate = VerificationGate(_config(), contexts)
    task = Task(id="t1", title="T")

    assert gate.verify(context, task) == gate.verify(context, task)


def test_every_stage_reports_even_after_an_earlier_failure(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    _write(contexts, context, "big.txt", "line\n" * 250)
    config = _config()
    config.project.test_command = _python("import sys; print('FAILED test_x'); sys.exit(1)")
    config.project.lint_command = _python("import sys; sys.exit(2)")

    result = VerificationGate(config, contexts).verify(context, Task(id="t1", title="T"))

    assert result.passed is False
    assert [item.category for item in result.failures] == [
        DiagnosticCategory.TEST,
        DiagnosticCategory.LINT,
        DiagnosticCategory.BUDGET,
    ]
    assert "FAILED test_x" in result.failures[0].message
    assert result.failures[0].command == config.project.test_command
    assert result.budget_actual == 250


def test_coverage_threshold_failure(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    config = _config()
    config.project.test_command = _python("print('TOTAL 10 5 50%')")
    config.workflow.test_coverage_threshold = 80

    result = VerificationGate(config, contexts).verify(context, Task(id="t1", title="T"))

    assert [item.category for item in result.failures] == [DiagnosticCategory.COVERAGE]


def test_missing_tool_yields_single_infra_diagnostic(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    config = _config()
    config.project.test_command = "definitely-not-a-real-tool-xyz"

    result = VerificationGate(config, contexts).verify(context, Task(id="t1", title="T"))

    assert result.passed is False
    assert [item.category for item in result.failures] == [DiagnosticCategory.INFRA]


def test_missing_context_directory_is_infra(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    contexts.release(context, cleanup=True)

    result = VerificationGate(_config(), contexts).verify(context, Task(id="t1", title="T"))

    assert [item.category for item in result.failures] == [DiagnosticCategory.INFRA]


def test_manual_checklist_requires_every_item_ticked(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    task = Task(id="t1", title="T", proof_type=ProofType.MANUAL_CHECKLIST, scenarios=["smoke"])
    gate = VerificationGate(_config(), contexts)

    missing = gate.verify(context, task)
    _write(contexts, context, "checklists/t1.md", "- [x] smoke test passes\n- [ ] docs\n")
    partial = gate.verify(context, task)
    _write(contexts, context, "checklists/t1.md", "- [x] smoke test passes\n- [x] docs\n")
    complete = gate.verify(context, task)

    assert "missing" in missing.failures[0].message
    assert [item.message for item in partial.failures] == ["Unchecked checklist item: docs"]
    assert complete.passed is True
    assert "checklist:docs" in complete.artifacts
    assert "scenario:smoke" in complete.artifacts


def test_checklist_that_is_not_utf8_is_still_read(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    target = context.base_path / "checklists" / "t1.md"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"- [x] caf\xe9 menu renders\n- [ ] r\xe9sum\xe9 upload\n")
    contexts.commit(context, "latin-1 checklist")
    task = Task(id="t1", title="T", proof_type=ProofType.MANUAL_CHECKLIST)

    result = VerificationGate(_config(), contexts).verify(context, task)

    assert result.passed is False
    assert [item.category for item in result.failures] == [DiagnosticCategory.TEST]
    assert result.failures[0].message.startswith("Unchecked checklist item: r")
    assert any(item.startswith("checklist:caf") for item in result.artifacts)


def test_infra_state_assertions_are_itemised(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    config = _config()
    config.project.infra_check_command = _python(
        "import json\n"
        "print(json.dumps({'assertion': 'bucket_exists', 'ok': True}))\n"
        "print(json.dumps({'assertion': 'dns_record', 'ok': False, 'message': 'no A record'}))"
    )
    task = Task(id="t1", title="T", proof_type=ProofType.INFRA_STATE)

    result = VerificationGate(config, contexts).verify(context, task)

    assert "assertion:bucket_exists" in result.artifacts
    assert [item.message for item in result.failures] == [
        "Infra assertion dns_record: no A record"
    ]


def test_integration_proof_falls_back_to_test_command(tmp_path: Path) -> None:
    contexts, context = _workspace(tmp_path)
    config = _config()
    config.project.integration_test_command = ""
    task = Task(id="t1", title="T", proof_type=ProofType.INTEGRATION_TEST)

    result = VerificationGate(config, contexts).verify(context, task)

    assert result.passed is True
    assert f"command:{config.project.test_command}" in result.artifacts
