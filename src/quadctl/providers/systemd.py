"""Systemd provider controlling quadlet-generated services."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass

from .process import run_command


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Reload, stop and start services in the ``user`` or ``system`` manager."""

    systemctl_bin: str = "systemctl"

    def reload(self, scope: str) -> None:
        """Run ``daemon-reload`` so the quadlet generator picks up changes."""
        self._systemctl("daemon-reload", scope=scope)

    def stop(self, unit: str, scope: str) -> None:
        """Stop *unit*."""
        self._systemctl("stop", unit, scope=scope)

    def start(self, unit: str, scope: str) -> None:
        """Start *unit*."""
        self._systemctl("start", unit, scope=scope)

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        scope: str,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin]
        if scope == "user":
            args.append("--user")
        args.append(command)
        if unit is not None:
            args.append(unit)
        return run_command(
            args,
            error_cls=SystemdError,
            error_prefix=" ".join(args[:-1] if unit is not None else args),
        )


__all__ = ["SystemdError", "SystemdProvider"]
