import tomllib
from pathlib import Path

from workgraph import __version__
from workgraph.config import WorkgraphConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "workgraph.toml"
    config = WorkgraphConfig.default()
    config.project.name = "workgraph-test"
    config.project.base_ref = "trunk"
    config.project.checklist_dir = "docs/checklists"
    config.executor.kind = "command"
    config.executor.command = "make implement"
    config.executor.primary = "codex"
    config.executor.max_retries = 3
    config.workflow.mode = "sequential"
    config.workflow.max_review_cycles = 5
    config.workflow.test_coverage_threshold = 80
    config.budget.medium_max_lines = 450
    config.review.use_agent_critic = True
    config.review.layer_rules = ["src/domain/*:sqlalchemy"]
    config.state.backend = "local"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "workgraph-test"
    assert loaded.project.base_ref == "trunk"
    assert loaded.project.checklist_dir == "docs/checklists"
    assert loaded.executor.kind == "command"
    assert loaded.executor.command == "make implement"
    assert loaded.executor.primary == "codex"
    assert loaded.executor.max_retries == 3
    assert loaded.workflow.mode == "sequential"
    assert loaded.workflow.max_review_cycles == 5
    assert loaded.workflow.test_coverage_threshold == 80
    assert loaded.budget.small_max_lines == 199
    assert loaded.budget.medium_max_lines == 450
    assert loaded.review.use_agent_critic is True
    assert loaded.review.layer_rules == ["src/domain/*:sqlalchemy"]
    assert loaded.review.forbidden_paths == [".env", "secrets/*", "production.config.*"]
    assert loaded.state.backend == "local"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.workflow.mode == "parallel"
    assert loaded.workflow.max_review_cycles == 3
    assert loaded.budget.large_max_lines == 2000


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(WorkgraphConfig.default())

    for section in ("[project]", "[executor]", "[workflow]", "[budget]", "[review]", "[state]"):
        assert section in rendered
    assert "abort_poll_seconds" in rendered
    assert "retry_backoff_seconds" in rendered
    assert 'forbidden_paths = [".env", "secrets/*", "production.config.*"]' in rendered
    assert tomllib.loads(rendered)["workflow"]["inline_single_task"] is True


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
