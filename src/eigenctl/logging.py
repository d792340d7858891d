"""Structured operation logging for eigenctl commands.

Every operator-facing command runs inside :meth:`StructuredLogger.operation`.
The scope collects steps, lock wait time and the final result, then appends:

* one JSON object per line to ``operations.jsonl`` (machine readable), and
* one summary line to ``eigenctl.log`` (human readable).

Logging must never break a command: when the log directory cannot be created
or a write fails the logger disables itself and later operations are no-ops.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "eigenctl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record for a single in-flight operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    op_id: str
    started_at: str
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "changed": changed}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when unavailable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._human_log_path = self._logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a command inside an operation scope and persist its record."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target else None,
            op_id=f"{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}-{secrets.token_hex(4)}",
            started_at=_now_iso(),
        )
        start = time.monotonic()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[type(exc).__name__])
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope, int((time.monotonic() - start) * 1000))

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        result = scope.result or {}
        record: dict[str, object] = {
            "ts": scope.started_at,
            "op_id": scope.op_id,
            "command": scope.command,
            "args": _sanitize(scope.args),
            "target": _sanitize(scope.target),
            "result": result,
            "steps": scope.steps,
            "duration_ms": duration_ms,
            "context": {"eigenctl_version": __version__},
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        human = (
            f"{scope.started_at} {scope.op_id} {scope.command} "
            f"{result.get('status', 'unknown')}: {result.get('message', '')}\n"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human)
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
