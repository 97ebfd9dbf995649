"""Logging sinks for cisctl.

Two sinks live here:

* :class:`StructuredLogger` appends one JSON document per CLI operation to
  ``operations.jsonl`` so every command leaves an auditable trail.
* :class:`RunLog` writes the human-readable remediation log, one line per
  phase transition::

      [2024-05-01T10:15:02+00:00] [INFO] [1.1.1] Starting detect phase

Both sinks disable themselves after an I/O failure rather than aborting the
remediation that is being logged.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARN", "ERROR")

SEVERITY_RANK: Mapping[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "SUCCESS": 20,
    "WARN": 30,
    "ERROR": 40,
}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


def normalize_level(value: str) -> str:
    """Return the canonical spelling of a log level (``WARNING`` -> ``WARN``)."""
    level = value.strip().upper()
    if level == "WARNING":
        level = "WARN"
    return level


class OperationScope:
    """Collects steps and the final result for a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.op_id = f"op-{datetime.now(tz=UTC).strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.perf_counter()

    def add_step(self, step_id: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"id": step_id, "status": status, "ts": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if backups:
            result["backups"] = [str(item) for item in backups]
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "ts": _now_iso(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
        }


class StructuredLogger:
    """Append operation records to ``<logs_dir>/operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it is unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON-lines operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{command} aborted: {exc!r}")
            raise
        finally:
            if scope.result is None:
                scope.success(f"{command} completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


class RunLog:
    """Plain-text remediation log with level filtering.

    Lines are appended to *path* (when given) and echoed to *stream*; ``ERROR``
    lines are echoed to *error_stream* instead when one is supplied.
    """

    def __init__(
        self,
        path: Path | None,
        *,
        level: str = "INFO",
        stream: TextIO | None = None,
        error_stream: TextIO | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Configure the sink; the parent directory is created lazily."""
        normalized = normalize_level(level)
        if normalized not in LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {level!r}")
        self.path = Path(path).expanduser() if path is not None else None
        self.level = normalized
        self._stream = stream
        self._error_stream = error_stream
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._enabled = self.path is not None

    @property
    def enabled(self) -> bool:
        """Return ``True`` while the file sink is still writable."""
        return self._enabled

    def is_enabled_for(self, severity: str) -> bool:
        """Return ``True`` when *severity* passes the configured threshold."""
        return SEVERITY_RANK[severity] >= SEVERITY_RANK[self.level]

    def format(self, severity: str, tag: str, message: str) -> str:
        """Render one log line without the trailing newline."""
        timestamp = self._clock().isoformat(timespec="seconds")
        return f"[{timestamp}] [{severity}] [{tag}] {message}"

    def emit(self, severity: str, tag: str, message: str) -> str | None:
        """Write a line; return it, or ``None`` when filtered out."""
        severity = normalize_level(severity)
        if severity not in SEVERITY_RANK:
            raise ValueError(f"Unsupported severity: {severity!r}")
        if not self.is_enabled_for(severity):
            return None
        line = self.format(severity, tag, message)
        self._append(line)
        target = self._error_stream if severity == "ERROR" and self._error_stream else self._stream
        if target is not None:
            target.write(line + "\n")
            target.flush()
        return line

    def debug(self, tag: str, message: str) -> str | None:
        """Emit a DEBUG line."""
        return self.emit("DEBUG", tag, message)

    def info(self, tag: str, message: str) -> str | None:
        """Emit an INFO line."""
        return self.emit("INFO", tag, message)

    def warn(self, tag: str, message: str) -> str | None:
        """Emit a WARN line."""
        return self.emit("WARN", tag, message)

    def error(self, tag: str, message: str) -> str | None:
        """Emit an ERROR line."""
        return self.emit("ERROR", tag, message)

    def success(self, tag: str, message: str) -> str | None:
        """Emit a SUCCESS line."""
        return self.emit("SUCCESS", tag, message)

    def _append(self, line: str) -> None:
        if not self._enabled or self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = [
    "LOG_LEVELS",
    "OperationScope",
    "RunLog",
    "SEVERITY_RANK",
    "StructuredLogger",
    "normalize_level",
]
