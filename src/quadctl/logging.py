"""Structured operation logging for quadctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps, warnings and errors and writes exactly one JSON record per
operation to ``operations.jsonl`` plus a one-line summary to ``quadctl.log``.

Logging must never break the command it observes: when the log directory is
unavailable or a write fails, the logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "quadctl.log"
_HUMAN_LOG_MAX_BYTES = 5 * 1024 * 1024
_HUMAN_LOG_BACKUPS = 5

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationStep:
    """Single recorded step inside an operation."""

    name: str
    status: str
    detail: str | None = None
    at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status, "at": self.at}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class OperationScope:
    """Collects the outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[OperationStep] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._started = time.monotonic()

    # Recording helpers ---------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step (e.g. ``staging.fetch``) with its *status*."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            warnings=warnings,
            errors=list(errors) if errors is not None else [message],
            changed=changed,
            backups=backups,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "changed": int(changed),
            "backups": [str(item) for item in backups or ()],
            "context": _json_safe(dict(context or {})),
            "rc": rc,
        }

    # Serialisation --------------------------------------------------------
    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        return {
            "ts": self._started_at,
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": [step.to_dict() for step in self.steps],
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "result": self.result,
            "context": {"quadctl_version": __version__},
        }


class StructuredLogger:
    """Write operation records and human-readable summaries to *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._human: logging.Logger | None = None
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Disabling structured logging; cannot create %s: %s", logs_dir, exc)
            self._enabled = False
            return
        self._human = self._build_human_logger()

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success(f"{command} completed.")
            self._write(scope)

    def _build_human_logger(self) -> logging.Logger | None:
        human = logging.getLogger(f"quadctl.operations.{id(self)}")
        human.propagate = False
        human.setLevel(logging.INFO)
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=_HUMAN_LOG_MAX_BYTES,
                backupCount=_HUMAN_LOG_BACKUPS,
                encoding="utf-8",
            )
        except OSError as exc:
            LOGGER.warning("Human log unavailable at %s: %s", self._human_log_path, exc)
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        human.handlers = [handler]
        return human

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            LOGGER.warning("Disabling structured logging after write failure: %s", exc)
            self._enabled = False
            return
        if self._human is not None:
            result = scope.result or {}
            status = str(result.get("status", "unknown"))
            level = {
                "success": logging.INFO,
                "warning": logging.WARNING,
                "error": logging.ERROR,
            }.get(status, logging.INFO)
            self._human.log(
                level,
                "%s [%s] %s (op=%s)",
                scope.command,
                status,
                result.get("message", ""),
                scope.op_id,
            )


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
