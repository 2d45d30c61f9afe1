from __future__ import annotations

import asyncio
import json
import logging
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from workgraph.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from workgraph.config import CONFIG_FILENAME, BackendName, WorkgraphConfig, load_config, save_config
from workgraph.executors import AgentExecutor, CommandExecutor, ImplementationExecutor
from workgraph.graph import DependencyGraph, GraphError
from workgraph.models import RunReport, Task
from workgraph.orchestrator import Orchestrator, OrchestratorError, request_abort
from workgraph.review import AgentCritic, ReviewGate
from workgraph.state import GitNotesStore, WorkgraphStateError
from workgraph.store import AdapterError, RetryingTaskStore, StateTaskStore
from workgraph.store.resilient import StoreRetryPolicy
from workgraph.verification import VerificationGate
from workgraph.workspace import ContextError, ContextManager

INVALID_GRAPH_EXIT = 3


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WorkgraphConfig
    state: GitNotesStore
    store: RetryingTaskStore
    contexts: ContextManager
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_event(state: GitNotesStore, event: dict[str, Any]) -> None:
    state.add_event(dict(event))
    name = event.get("event")
    if name in {"backend_retry", "backend_fallback_success", "store_retry"}:
        state.increment_metric(f"{name}_count")


def _build_backend(
    config: WorkgraphConfig, repo_root: Path, state: GitNotesStore
) -> ResilientBackend:
    primary_name = config.executor.primary
    fallback_name = config.executor.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.executor.max_retries)),
        backoff_seconds=max(0.0, float(config.executor.retry_backoff_seconds)),
        timeout_seconds=max(0.0, float(config.executor.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_event(state, event),
    )


def _build_executor(
    config: WorkgraphConfig, backend: ResilientBackend
) -> ImplementationExecutor:
    if config.executor.kind == "command":
        return CommandExecutor(
            config.executor.command,
            timeout_seconds=float(config.executor.timeout_seconds) or None,
        )
    return AgentExecutor(backend, model=config.executor.model or None)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    state = GitNotesStore(
        repo_root,
        backend_mode=config.state.backend,
        workspace_dir=config.state.workspace_dir,
    )
    store = RetryingTaskStore(
        StateTaskStore(state),
        StoreRetryPolicy(),
        event_hook=lambda event: _record_event(state, event),
    )
    contexts = ContextManager(repo_root, workspace_dir=config.state.workspace_dir)
    backend = _build_backend(config, repo_root, state)
    verification = VerificationGate(config, contexts)
    critic = (
        AgentCritic(backend, model=config.executor.model or None)
        if config.review.use_agent_critic
        else None
    )
    review = ReviewGate(config, contexts, verification, critic=critic)
    orchestrator = Orchestrator(
        store=store,
        contexts=contexts,
        executor=_build_executor(config, backend),
        verification=verification,
        review=review,
        config=config,
        state=state,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        store=store,
        contexts=contexts,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (WorkgraphStateError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Could not load workgraph: {exc}") from exc


def _tasks_from_file(path: Path, root_id: str) -> list[Task]:
    payload = tomllib.loads(path.read_text(encoding="utf-8"))
    items = payload.get("tasks")
    if not isinstance(items, list) or not items:
        raise click.ClickException(f"{path} has no [[tasks]] entries.")
    tasks: list[Task] = []
    for item in items:
        if not isinstance(item, dict):
            raise click.ClickException(f"{path}: every [[tasks]] entry must be a table.")
        try:
            task = Task.from_dict({**item, "parent_id": root_id, "state": "pending"})
        except ValueError as exc:
            raise click.ClickException(f"{path}: {exc}") from exc
        tasks.append(task)
    return tasks


def _echo_report(report: RunReport) -> None:
    click.echo(f"Run ID: {report.run_id}")
    click.echo(f"Status: {report.status} (exit {report.exit_code})")
    if report.message:
        click.echo(f"Message: {report.message}")
    for index, batch in enumerate(report.batches):
        click.echo(f"Batch {index}: {', '.join(batch)}")
    for outcome in report.outcomes.values():
        line = f"  {outcome.task_id:<20} {outcome.state.value:<18} {outcome.reason}"
        if outcome.command:
            line += f"  [{outcome.command}]"
        click.echo(line.rstrip())
    if report.integrated:
        click.echo(f"Integrated: {', '.join(report.integrated)}")
    for task_id, paths in report.conflicts.items():
        click.echo(f"Conflict: {task_id} {', '.join(paths)}".rstrip())


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Dependency-aware work orchestration."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--executor", type=click.Choice(["agent", "command"]), default=None)
@click.option("--base-ref", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(executor: str | None, base_ref: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if executor:
        config.executor.kind = executor  # type: ignore[assignment]
    if base_ref:
        config.project.base_ref = base_ref
    save_config(config_path, config)

    state = GitNotesStore(
        repo_root,
        backend_mode=config.state.backend,
        workspace_dir=config.state.workspace_dir,
    )
    click.echo(f"Initialized workgraph in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Executor: {config.executor.kind}")
    click.echo(f"State backend: {state.backend_mode}")


@cli.command("import")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--root", "root_id", default=None, help="Parent id; defaults to the file's root.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def import_command(tasks_file: Path, root_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        declared_root = tomllib.loads(tasks_file.read_text(encoding="utf-8")).get("root")
    except tomllib.TOMLDecodeError as exc:
        raise click.ClickException(f"{tasks_file}: {exc}") from exc
    root = root_id or (str(declared_root) if declared_root else tasks_file.stem)
    tasks = _tasks_from_file(tasks_file, root)
    try:
        DependencyGraph(tasks)
    except GraphError as exc:
        raise click.ClickException(f"Refusing to import: {exc}") from exc
    try:
        for task in tasks:
            runtime.store.add_task(task)
    except AdapterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Imported {len(tasks)} task(s) under {root}")


@cli.command("graph")
@click.argument("root_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def graph_command(root_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        tasks = runtime.store.list_children(root_id)
    except AdapterError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        graph = DependencyGraph(tasks)
    except GraphError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(INVALID_GRAPH_EXIT)
    for batch in graph.batches():
        labels = [f"{task_id} ({graph.task(task_id).state.value})" for task_id in batch.task_ids]
        click.echo(f"Batch {batch.index}: {', '.join(labels)}")


@cli.command("run")
@click.argument("root_id")
@click.option("--sequential", "mode", flag_value="sequential", default=None)
@click.option("--parallel", "mode", flag_value="parallel")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(root_id: str, mode: str | None, as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = asyncio.run(runtime.orchestrator.run(root_id, mode))  # type: ignore[arg-type]
    except (WorkgraphStateError, ContextError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _echo_report(report)
    sys.exit(report.exit_code)


@cli.command("status")
@click.argument("root_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(root_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.orchestrator.status(root_id)
    except AdapterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("abort")
@click.argument("run_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def abort_command(run_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        request_abort(runtime.state, run_id)
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Abort requested for {run_id}")


@cli.command("resume")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        reset = runtime.orchestrator.resume(task_id)
    except (OrchestratorError, AdapterError, ContextError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Resumed {task_id}; reset to pending: {', '.join(reset)}")


@cli.command("resolve")
@click.argument("task_id")
@click.option("--abort", "abandon", is_flag=True, default=False, help="Give up and fail the task.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resolve_command(task_id: str, abandon: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.orchestrator.resolve(task_id, abort=abandon)
    except (OrchestratorError, AdapterError, ContextError) as exc:
        raise click.ClickException(str(exc)) from exc
    if abandon:
        click.echo(f"Abandoned integration of {task_id}; task failed.")
    elif result.merged:
        click.echo(f"Integrated {task_id}")
    else:
        raise click.ClickException(
            f"{task_id} still conflicts in: {', '.join(result.conflicting_paths)}"
        )
