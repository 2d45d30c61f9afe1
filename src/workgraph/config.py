from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ExecutorKind = Literal["agent", "command"]
BackendName = Literal["codex", "claude"]
RunMode = Literal["parallel", "sequential"]
StateBackendName = Literal["notes", "local"]

CONFIG_FILENAME = "workgraph.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    base_ref: str = "main"
    test_command: str = "uv run --extra dev pytest -q"
    integration_test_command: str = "uv run --extra dev pytest -q -m integration"
    lint_command: str = "uv run --extra dev ruff check src tests"
    type_check_command: str = "python -m compileall -q src tests"
    infra_check_command: str = ""
    checklist_dir: str = "checklists"


@dataclass(slots=True)
class ExecutorConfig:
    kind: ExecutorKind = "agent"
    command: str = ""
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class WorkflowConfig:
    mode: RunMode = "parallel"
    max_review_cycles: int = 3
    inline_single_task: bool = True
    test_coverage_threshold: int = 0
    task_watchdog_seconds: float = 0.0
    abort_poll_seconds: float = 1.0
    context_retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class BudgetConfig:
    small_max_lines: int = 199
    medium_max_lines: int = 400
    large_max_lines: int = 2000


@dataclass(slots=True)
class ReviewConfig:
    use_agent_critic: bool = False
    max_function_lines: int = 80
    duplicate_block_lines: int = 6
    layer_rules: list[str] = field(default_factory=list)
    forbidden_paths: list[str] = field(
        default_factory=lambda: [".env", "secrets/*", "production.config.*"]
    )


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "notes"
    workspace_dir: str = ".workgraph"


@dataclass(slots=True)
class WorkgraphConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> WorkgraphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WorkgraphConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            executor=ExecutorConfig(**data.get("executor", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            budget=BudgetConfig(**data.get("budget", {})),
            review=ReviewConfig(**data.get("review", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "base_ref": self.project.base_ref,
                "test_command": self.project.test_command,
                "integration_test_command": self.project.integration_test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
                "infra_check_command": self.project.infra_check_command,
                "checklist_dir": self.project.checklist_dir,
            },
            "executor": {
                "kind": self.executor.kind,
                "command": self.executor.command,
                "primary": self.executor.primary,
                "fallback": self.executor.fallback,
                "model": self.executor.model,
                "max_retries": self.executor.max_retries,
                "retry_backoff_seconds": self.executor.retry_backoff_seconds,
                "timeout_seconds": self.executor.timeout_seconds,
            },
            "workflow": {
                "mode": self.workflow.mode,
                "max_review_cycles": self.workflow.max_review_cycles,
                "inline_single_task": self.workflow.inline_single_task,
                "test_coverage_threshold": self.workflow.test_coverage_threshold,
                "task_watchdog_seconds": self.workflow.task_watchdog_seconds,
                "abort_poll_seconds": self.workflow.abort_poll_seconds,
                "context_retry_backoff_seconds": self.workflow.context_retry_backoff_seconds,
            },
            "budget": {
                "small_max_lines": self.budget.small_max_lines,
                "medium_max_lines": self.budget.medium_max_lines,
                "large_max_lines": self.budget.large_max_lines,
            },
            "review": {
                "use_agent_critic": self.review.use_agent_critic,
                "max_function_lines": self.review.max_function_lines,
                "duplicate_block_lines": self.review.duplicate_block_lines,
                "layer_rules": list(self.review.layer_rules),
                "forbidden_paths": list(self.review.forbidden_paths),
            },
            "state": {
                "backend": self.state.backend,
                "workspace_dir": self.state.workspace_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WorkgraphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "executor", "workflow", "budget", "review", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WorkgraphConfig:
    if not path.exists():
        return WorkgraphConfig.default()
    return WorkgraphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WorkgraphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
