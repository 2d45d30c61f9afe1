from __future__ import annotations

import json
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
COVERAGE_PATTERN = re.compile(r"\b(\d{1,3})%")
FAILURE_LINE_PATTERN = re.compile(r"^(?:FAILED|ERROR|error:|E\s{2,})\s*(.+)$")
SHELL_NOT_FOUND_EXIT = 127


class InfraFault(RuntimeError):
    """A verification tool could not be executed at all."""

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message)
        self.command = command


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    used_shell: bool

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"

    def failure_lines(self, limit: int = 5) -> list[str]:
        lines: list[str] = []
        for raw_line in self.output.splitlines():
            match = FAILURE_LINE_PATTERN.match(raw_line.strip())
            if match:
                lines.append(match.group(0).strip())
            if len(lines) >= limit:
                break
        return lines


def run_command(command: str, cwd: Path) -> CommandResult:
    """Run a configured check command inside ``cwd``.

    Plain commands are exec'd without a shell; shell syntax falls back to
    ``sh``. Missing executables raise ``InfraFault``.
    """
    command_text = command.strip()
    if not cwd.is_dir():
        raise InfraFault(f"Execution context directory is missing: {cwd}", command=command_text)

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    payload: str | list[str] = command_text
    if not used_shell:
        try:
            payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            payload = command_text

    try:
        proc = subprocess.run(
            payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise InfraFault(f"Could not start `{command_text}`: {exc}", command=command_text) from exc
    if used_shell and proc.returncode == SHELL_NOT_FOUND_EXIT:
        raise InfraFault(
            f"Could not start `{command_text}`: {proc.stderr.strip()[-300:]}",
            command=command_text,
        )
    return CommandResult(
        command=command_text,
        exit_code=proc.returncode,
        stdout=proc.stdout.strip()[-4000:],
        stderr=proc.stderr.strip()[-4000:],
        used_shell=used_shell,
    )


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _coverage_from_payload(payload: dict[str, Any]) -> int | None:
    raw: Any = payload.get("coverage_percent")
    if raw is None:
        coverage = payload.get("coverage")
        raw = coverage.get("percent") if isinstance(coverage, dict) else coverage
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return min(100, max(0, int(float(raw))))
    return None


def extract_coverage_percent(result: CommandResult) -> int | None:
    for payload in extract_json_objects(result.output):
        percent = _coverage_from_payload(payload)
        if percent is not None:
            return percent
    # pytest-cov prints a TOTAL row; prefer it over any other percentage.
    for line in result.output.splitlines():
        if line.strip().startswith("TOTAL"):
            matches = COVERAGE_PATTERN.findall(line)
            if matches:
                return min(100, int(matches[-1]))
    matches = COVERAGE_PATTERN.findall(result.output)
    if not matches:
        return None
    return min(100, max(int(item) for item in matches))
