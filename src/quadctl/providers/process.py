"""Shared subprocess runner for the process-backed providers."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path


def run_command(
    args: Sequence[str],
    *,
    error_cls: type[Exception],
    error_prefix: str,
    check: bool = True,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* capturing text output.

    Missing executables and (when *check* is set) non-zero exits raise
    *error_cls* with the command's stderr or stdout in the message.
    """
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise error_cls(f"{error_prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = ["run_command"]
