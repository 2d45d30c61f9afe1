from __future__ import annotations

import fnmatch

TEST_DIR_SEGMENTS = {"tests", "test", "__tests__", "spec", "specs"}
TEST_FILE_SUFFIXES = (
    "_test.py",
    ".test.js",
    ".test.jsx",
    ".test.ts",
    ".test.tsx",
    ".spec.js",
    ".spec.jsx",
    ".spec.ts",
    ".spec.tsx",
)


def normalize(path: str) -> str:
    return path.replace("\\", "/").removeprefix("./")


def is_test_path(path: str) -> bool:
    normalized = normalize(path).lower()
    name = normalized.rsplit("/", maxsplit=1)[-1]
    if TEST_DIR_SEGMENTS & set(normalized.split("/")[:-1]):
        return True
    return name.startswith("test_") or name.endswith(TEST_FILE_SUFFIXES)


def match_pattern(path: str, patterns: list[str]) -> str | None:
    normalized = normalize(path)
    for pattern in patterns:
        if fnmatch.fnmatch(normalized, pattern):
            return pattern
        # "src/pkg/" style prefixes.
        if pattern.endswith("/") and normalized.startswith(pattern):
            return pattern
    return None
