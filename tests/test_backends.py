import asyncio
import sys
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from workgraph.backends import RetryPolicy
from workgraph.backends.base import (
    WORKING_DIRECTORY_KEY,
    AgentBackend,
    BackendExecutionError,
    render_context,
    resolve_working_directory,
)
from workgraph.backends.claude import ClaudeCodeBackend, extract_event_text
from workgraph.backends.codex import CodexBackend
from workgraph.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "o"
        yield "k"


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"task_id": "a", "model": "gpt-5-codex", WORKING_DIRECTORY_KEY: "/tmp/wt"},
        tools=["read", "write"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--full-auto" in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]
    assert WORKING_DIRECTORY_KEY not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("implement feature", model="opus", tools=["Edit"])

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "stream-json" in command
    assert command[command.index("--permission-mode") + 1] == "acceptEdits"
    assert command[command.index("--model") + 1] == "opus"
    assert command[command.index("--allowedTools") + 1] == "Edit"


def test_working_directory_override_and_private_keys() -> None:
    context = {"task_id": "a", WORKING_DIRECTORY_KEY: "/tmp/wt"}

    assert resolve_working_directory(context, Path("/repo")) == "/tmp/wt"
    assert resolve_working_directory({}, Path("/repo")) == "/repo"
    assert resolve_working_directory({}, None) is None
    assert render_context(context) == {"task_id": "a"}


def test_extract_event_text_shapes() -> None:
    assert extract_event_text({"content": "plain"}) == "plain"
    assert extract_event_text({"content": [{"text": "a"}, {"text": "b"}, {"x": 1}]}) == "ab"
    assert extract_event_text({"message": {"content": "nested"}}) == "nested"
    assert extract_event_text({"type": "result", "result": "final"}) == "final"
    assert extract_event_text({"type": "system", "result": "ignored"}) == ""


def test_complete_joins_streamed_chunks() -> None:
    assert asyncio.run(SuccessBackend().complete("system", "user", {})) == "ok"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = asyncio.run(backend.complete("system", "user", {}))

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names == [
        "backend_attempt_failed",
        "backend_retry",
        "backend_attempt_failed",
        "backend_fallback_success",
    ]


def test_resilient_backend_skips_retries_for_permanent_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        asyncio.run(backend.complete("system", "user", {}))

    assert (primary.calls, fallback.calls) == (1, 1)


def test_resilient_backend_times_out_slow_backends() -> None:
    class SlowBackend(AgentBackend):
        async def execute(self, system_prompt, user_prompt, context, tools=None):
            await asyncio.sleep(5)
            yield "late"

    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SlowBackend(),
        fallback_name="claude",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    with pytest.raises(BackendExecutionError, match="timed out"):
        asyncio.run(backend.complete("system", "user", {}))


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"response.output_text.delta\",\"content\":\"hel\"}\n",
                    b"noise-before-json\n",
                    b"{\"type\":\"response.output_text.delta\",",
                    b"\"content\":\"lo\"}\n",
                    b"{\"type\":\"response.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()
            self.returncode: int | None = None

        async def wait(self) -> int:
            self.returncode = 0
            return 0

        def kill(self) -> None:
            captured["killed"] = True

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(working_directory=Path("/repo"), event_hook=events.append)
    output = asyncio.run(
        backend.complete("system", "user", {WORKING_DIRECTORY_KEY: "/repo/.workgraph/contexts/a"})
    )

    assert output == "hello"
    assert captured["cwd"] == "/repo/.workgraph/contexts/a"
    assert "killed" not in captured
    event_names = [event.get("event") for event in events]
    assert event_names == ["codex_cli_start", "codex_json_parse_fallback", "codex_cli_exit"]


def test_resilient_backend_has_no_timeout_by_default() -> None:
    class PatientBackend(AgentBackend):
        async def execute(self, system_prompt, user_prompt, context, tools=None):
            await asyncio.sleep(0.2)
            yield "done"

    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=PatientBackend(),
        fallback_name="claude",
        fallback_backend=PatientBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0),
    )

    assert RetryPolicy().timeout_seconds == 0
    assert asyncio.run(backend.complete("system", "user", {})) == "done"


def test_timed_out_claude_process_is_killed(tmp_path: Path) -> None:
    fake_claude = tmp_path / "claude"
    fake_claude.write_text(
        f"#!{sys.executable}\n"
        "import pathlib, time\n"
        "log = pathlib.Path('agents.log')\n"
        "with log.open('a') as handle:\n"
        "    handle.write('start\\n')\n"
        "time.sleep(3)\n"
        "with log.open('a') as handle:\n"
        "    handle.write('late-write\\n')\n",
        encoding="utf-8",
    )
    fake_claude.chmod(0o755)
    claude = ClaudeCodeBackend(binary=str(fake_claude), working_directory=tmp_path)
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=claude,
        fallback_name="claude",
        fallback_backend=claude,
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=1.0),
    )

    with pytest.raises(BackendExecutionError, match="timed out"):
        asyncio.run(backend.complete("system", "user", {}))
    time.sleep(3.5)

    log = tmp_path / "agents.log"
    lines = log.read_text(encoding="utf-8").splitlines() if log.exists() else []
    assert "late-write" not in lines
