from __future__ import annotations

import ast
import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from workgraph.config import ReviewConfig
from workgraph.models import Task
from workgraph.paths import is_test_path, match_pattern, normalize

FindingCategory = Literal["security", "scope", "quality", "critic"]

HUNK_PATTERN = re.compile(r"^@@ -\d+(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")

SECRET_PATTERNS = (
    ("AWS access key", re.compile(r"\bAKIA[0-9A-Z]{16}\b")),
    ("private key", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")),
    (
        "hard-coded credential",
        re.compile(
            r"(?i)\b(?:password|passwd|secret|api[_-]?key|access[_-]?token|auth[_-]?token)"
            r"\s*[:=]\s*[\"'][^\"'\s]{8,}[\"']"
        ),
    ),
)
INJECTION_PATTERNS = (
    ("eval() call", re.compile(r"(?<![\w.])eval\(")),
    ("exec() call", re.compile(r"(?<![\w.])exec\(")),
    ("os.system() call", re.compile(r"\bos\.system\(")),
    ("subprocess with shell=True", re.compile(r"\bshell\s*=\s*True\b")),
    ("pickle deserialisation", re.compile(r"\bpickle\.loads?\(")),
    (
        "SQL built from an f-string",
        re.compile(r"\.execute(?:many)?\(\s*f[\"']"),
    ),
    (
        "SQL built by string concatenation",
        re.compile(
            r"(?i)\.execute(?:many)?\(\s*[\"'][^\"']*"
            r"\b(?:select|insert|update|delete)\b[^\"']*[\"']\s*(?:\+|%)"
        ),
    ),
)
ROUTE_PATTERN = re.compile(
    r"^\s*@\w+\.(?:route|get|post|put|patch|delete|api_route)\("
)
AUTH_PATTERN = re.compile(
    r"(?i)(?:login_required|requires?_auth|authenticated|permission|jwt_required|"
    r"Depends\(|Security\(|auth)"
)
ROUTE_AUTH_WINDOW = 4


@dataclass(frozen=True, slots=True)
class Finding:
    category: FindingCategory
    message: str
    path: str = ""
    line: int = 0

    @property
    def reason(self) -> str:
        location = ""
        if self.path:
            location = f"{self.path}:{self.line} " if self.line else f"{self.path} "
        return f"{self.category}: {location}{self.message}"


@dataclass(frozen=True, slots=True)
class AddedLine:
    number: int
    text: str


def parse_added_lines(diff_text: str) -> dict[str, list[AddedLine]]:
    # Hunk bodies are read by their declared counts so "+++" content is not a header.
    added: dict[str, list[AddedLine]] = defaultdict(list)
    current: str | None = None
    line_number = 0
    old_left = new_left = 0
    for raw in diff_text.splitlines():
        if old_left > 0 or new_left > 0:
            if raw.startswith("+"):
                if current is not None:
                    added[current].append(AddedLine(line_number, raw[1:]))
                line_number += 1
                new_left -= 1
            elif raw.startswith("-"):
                old_left -= 1
            elif not raw.startswith("\\"):
                old_left -= 1
                new_left -= 1
                line_number += 1
            continue
        if raw.startswith("diff --git "):
            current = None
            continue
        if raw.startswith("+++ "):
            target = raw[4:].strip()
            current = None if target == "/dev/null" else normalize(target.removeprefix("b/"))
            continue
        hunk = HUNK_PATTERN.match(raw)
        if hunk:
            old_left = int(hunk.group(1) or 1)
            line_number = int(hunk.group(2))
            new_left = int(hunk.group(3) or 1)
    return dict(added)


def scan_security(
    added: dict[str, list[AddedLine]], changed_files: list[str], config: ReviewConfig
) -> list[Finding]:
    findings: list[Finding] = []
    for path in changed_files:
        matched = match_pattern(path, config.forbidden_paths)
        if matched:
            findings.append(
                Finding("security", f"touches forbidden path (matched {matched})", normalize(path))
            )

    for path, lines in added.items():
        for line in lines:
            for label, pattern in SECRET_PATTERNS:
                if pattern.search(line.text):
                    findings.append(Finding("security", f"possible {label}", path, line.number))
        if is_test_path(path):
            continue
        for index, line in enumerate(lines):
            for label, pattern in INJECTION_PATTERNS:
                if pattern.search(line.text):
                    findings.append(Finding("security", label, path, line.number))
            if ROUTE_PATTERN.match(line.text):
                window = lines[max(0, index - ROUTE_AUTH_WINDOW) : index + ROUTE_AUTH_WINDOW + 1]
                if not any(AUTH_PATTERN.search(item.text) for item in window):
                    findings.append(
                        Finding(
                            "security",
                            "new route handler without an authentication check",
                            path,
                            line.number,
                        )
                    )
    return findings


def scan_scope(task: Task, changed_files: list[str], *, checklist_dir: str) -> list[Finding]:
    """Non-test files must match one of the task's scope globs."""
    if not task.scope:
        return []
    checklist = normalize(f"{checklist_dir.rstrip('/')}/{task.id}.md")
    findings: list[Finding] = []
    for path in changed_files:
        normalized = normalize(path)
        if normalized == checklist or is_test_path(normalized):
            continue
        if match_pattern(normalized, task.scope) is None:
            findings.append(
                Finding("scope", f"changed outside the task scope {task.scope}", normalized)
            )
    return findings


def _oversized_functions(
    path: str, source: str, touched: set[int], max_lines: int
) -> list[Finding]:
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return []
    findings: list[Finding] = []
    for node in ast.walk(tree):
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        end = node.end_lineno or node.lineno
        length = end - node.lineno + 1
        if length <= max_lines:
            continue
        if not any(node.lineno <= number <= end for number in touched):
            continue
        findings.append(
            Finding(
                "quality",
                f"function {node.name} is {length} lines long (max {max_lines})",
                path,
                node.lineno,
            )
        )
    return findings


def _duplicate_blocks(added: dict[str, list[AddedLine]], size: int) -> list[Finding]:
    if size <= 0:
        return []
    seen: dict[tuple[str, ...], tuple[str, int]] = {}
    reported: set[tuple[str, ...]] = set()
    findings: list[Finding] = []
    for path, lines in added.items():
        meaningful = [line for line in lines if line.text.strip()]
        for start in range(len(meaningful) - size + 1):
            window = meaningful[start : start + size]
            key = tuple(line.text.strip() for line in window)
            if all(len(text) < 4 for text in key):
                continue
            origin = seen.get(key)
            if origin is None:
                seen[key] = (path, window[0].number)
                continue
            if origin == (path, window[0].number) or key in reported:
                continue
            # Overlapping windows of one repeated run count once.
            if origin[0] == path and window[0].number - origin[1] < size:
                continue
            reported.add(key)
            findings.append(
                Finding(
                    "quality",
                    f"{size}-line block duplicated from {origin[0]}:{origin[1]}",
                    path,
                    window[0].number,
                )
            )
    return findings


def _layer_violations(
    added: dict[str, list[AddedLine]], rules: list[str]
) -> list[Finding]:
    findings: list[Finding] = []
    for rule in rules:
        glob, sep, module = rule.partition(":")
        if not sep or not glob.strip() or not module.strip():
            continue
        module = module.strip()
        pattern = re.compile(rf"^\s*(?:from|import)\s+{re.escape(module)}(?:[.\s]|$)")
        for path, lines in added.items():
            if match_pattern(path, [glob.strip()]) is None:
                continue
            for line in lines:
                if pattern.match(line.text):
                    findings.append(
                        Finding(
                            "quality",
                            f"imports {module}, which layer rule '{rule}' forbids",
                            path,
                            line.number,
                        )
                    )
    return findings


def scan_quality(
    added: dict[str, list[AddedLine]], base_path: Path, config: ReviewConfig
) -> list[Finding]:
    findings: list[Finding] = []
    for path, lines in added.items():
        if not path.endswith(".py"):
            continue
        file_path = base_path / path
        if not file_path.is_file():
            continue
        source = file_path.read_text(encoding="utf-8", errors="replace")
        touched = {line.number for line in lines}
        findings.extend(
            _oversized_functions(path, source, touched, int(config.max_function_lines))
        )
    findings.extend(_duplicate_blocks(added, int(config.duplicate_block_lines)))
    findings.extend(_layer_violations(added, list(config.layer_rules)))
    return findings
