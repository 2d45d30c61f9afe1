from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

# Context key that overrides the backend's working directory for one call.
WORKING_DIRECTORY_KEY = "_working_directory"


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


def resolve_working_directory(context: dict[str, Any], default: Path | None) -> str | None:
    override = context.get(WORKING_DIRECTORY_KEY)
    if isinstance(override, str) and override.strip():
        return override
    return str(default) if default else None


def render_context(context: dict[str, Any]) -> dict[str, Any]:
    """Drop private routing keys before the context is shown to an agent."""
    return {key: value for key, value in context.items() if not key.startswith("_")}


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context, tools):
            chunks.append(chunk)
        return "".join(chunks).strip()


async def terminate_process(process: asyncio.subprocess.Process) -> None:
    """Kill an agent CLI that is still running so it cannot keep editing its context."""
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()
