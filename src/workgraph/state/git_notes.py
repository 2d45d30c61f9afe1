from __future__ import annotations

import json
import os
import subprocess
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from workgraph.models import utcnow_iso


class WorkgraphStateError(RuntimeError):
    """Raised when shared-state operations fail."""


class GitNotesStore:
    """Versioned JSON documents kept in git notes, or local files outside git.

    Each namespace holds one envelope ``{schema_version, revision, updated_at,
    data}``; writers use ``update_json`` for optimistic concurrency.
    """

    NAMESPACES = {"tasks", "runs", "leases", "events", "metrics"}
    SCHEMA_VERSION = 1
    MAX_EVENTS = 500

    def __init__(
        self,
        repo_root: Path,
        *,
        backend_mode: str = "notes",
        workspace_dir: str = ".workgraph",
    ) -> None:
        if backend_mode not in {"notes", "local"}:
            raise WorkgraphStateError(f"Unsupported state backend mode: {backend_mode}")
        self.repo_root = repo_root.resolve()
        self.workspace_root = self.repo_root / workspace_dir
        self.local_state_dir = self.workspace_root / "state"
        self.local_state_dir.mkdir(parents=True, exist_ok=True)
        ignore_file = self.workspace_root / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")
        self.anchor_file = self.workspace_root / "anchor"
        self.lock_file = self.local_state_dir / ".lock"
        self._git_repo_available = self._is_git_repo()
        if backend_mode == "local" or not self._git_repo_available:
            self._backend_mode = "local"
        else:
            self._backend_mode = backend_mode

    @property
    def git_enabled(self) -> bool:
        return self._backend_mode == "notes" and self._git_repo_available

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            input=input_text,
        )
        if check and proc.returncode != 0:
            raise WorkgraphStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in GitNotesStore.NAMESPACES:
            raise WorkgraphStateError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        return self.local_state_dir / f"{namespace}.json"

    @staticmethod
    def _notes_ref(namespace: str) -> str:
        return f"refs/notes/workgraph/{namespace}"

    def _anchor_object(self) -> str:
        # Notes hang off a fixed blob so state never depends on HEAD moving.
        if self.anchor_file.exists():
            return self.anchor_file.read_text(encoding="utf-8").strip()
        proc = self._run_git(
            ["hash-object", "-w", "--stdin"],
            input_text="workgraph-state-anchor\n",
        )
        anchor = proc.stdout.strip()
        self.anchor_file.write_text(anchor, encoding="utf-8")
        return anchor

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise WorkgraphStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        if self.git_enabled:
            proc = self._run_git(
                ["notes", "--ref", self._notes_ref(namespace), "show", self._anchor_object()],
                check=False,
            )
            content = proc.stdout.strip() if proc.returncode == 0 else ""
        else:
            local_file = self._local_file(namespace)
            content = local_file.read_text(encoding="utf-8") if local_file.exists() else ""
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self.git_enabled:
            self._run_git(
                [
                    "notes",
                    "--ref",
                    self._notes_ref(namespace),
                    "add",
                    "-f",
                    "-F",
                    "-",
                    self._anchor_object(),
                ],
                input_text=serialized,
            )
            return
        self._local_file(namespace).write_text(serialized, encoding="utf-8")

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if isinstance(raw_payload, dict) and {"schema_version", "revision", "data"} <= set(
            raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        return self._normalize_envelope(
            self._read_raw_json(namespace), {} if default is None else default
        )

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current_revision = int(self.get_envelope(namespace).get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise WorkgraphStateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except WorkgraphStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise WorkgraphStateError(str(last_error) if last_error else "State update failed.")

    def get_runs(self) -> dict[str, Any]:
        runs = self.get_json("runs", default={})
        return runs if isinstance(runs, dict) else {}

    def get_run(self, run_id: str) -> dict[str, Any]:
        run = self.get_runs().get(run_id)
        return run if isinstance(run, dict) else {}

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id)
            if not isinstance(run, dict):
                run = {"run_id": run_id}
            run.update(updates)
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def get_leases(self) -> dict[str, Any]:
        leases = self.get_json("leases", default={})
        return leases if isinstance(leases, dict) else {}

    def get_events(self, run_id: str | None = None) -> list[dict[str, Any]]:
        payload = self.get_json("events", default={"events": []})
        events = payload.get("events", []) if isinstance(payload, dict) else []
        if not isinstance(events, list):
            return []
        if run_id is None:
            return events
        return [item for item in events if isinstance(item, dict) and item.get("run_id") == run_id]

    def add_event(self, event: dict[str, Any]) -> None:
        record = dict(event)
        record.setdefault("at", utcnow_iso())

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"events": []}
            events = result.get("events")
            if not isinstance(events, list):
                events = []
            events.append(record)
            result["events"] = events[-self.MAX_EVENTS :]
            return result

        self.update_json("events", _updater, default={"events": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def increment_metric(self, key: str, value: int = 1) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            metrics[key] = int(metrics.get(key, 0)) + value
            return metrics

        self.update_json("metrics", _updater, default={})
