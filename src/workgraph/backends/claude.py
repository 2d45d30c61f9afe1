from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from workgraph.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    render_context,
    resolve_working_directory,
    terminate_process,
)


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)
    result = event.get("result")
    if isinstance(result, str) and event.get("type") == "result":
        return result
    return ""


class ClaudeCodeBackend(AgentBackend):
    """Runs ``claude -p`` with edits auto-accepted inside the task's context."""

    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self, user_prompt: str, *, model: str | None = None, tools: list[str] | None = None
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "acceptEdits",
        ]
        if model:
            command.extend(["--model", model])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        visible = render_context(context)
        model = visible.pop("model", None)
        if visible:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(visible, ensure_ascii=False, indent=2)}"
            )

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["CLAUDE_MD"] = temp_file.name

            command = self.build_command(
                user_prompt, model=model if isinstance(model, str) else None, tools=tools
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=resolve_working_directory(context, self.working_directory),
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Claude binary not found: {self.binary}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    "Claude backend did not expose stdout.", backend=self.name, retriable=False
                )

            parse_buffer = ""
            try:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    candidate = f"{parse_buffer}{line}" if parse_buffer else line
                    try:
                        event = json.loads(candidate)
                        parse_buffer = ""
                    except json.JSONDecodeError:
                        if appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                        parse_buffer = ""
                        yield line
                        continue

                    if isinstance(event, dict):
                        content = extract_event_text(event)
                        if content:
                            yield content

                if parse_buffer:
                    yield parse_buffer

                return_code = await process.wait()
                stderr_output = ""
                if process.stderr is not None:
                    stderr_output = (
                        (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                    )
            finally:
                # Timeout, abort or an abandoned stream must not leave the agent running.
                await terminate_process(process)
            if return_code != 0:
                raise BackendExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
