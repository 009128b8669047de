"""Podman-backed named volume store."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from .process import run_command


class VolumeStoreError(RuntimeError):
    """Raised when a container engine volume operation fails."""


@dataclass(slots=True)
class PodmanVolumeStore:
    """Manage named volumes through ``podman volume``."""

    podman_bin: str = "podman"

    def exists(self, name: str) -> bool:
        """Return ``True`` when volume *name* exists."""
        result = self._volume("exists", name, check=False)
        if result.returncode not in (0, 1):
            message = (result.stderr or result.stdout or "no output").strip()
            raise VolumeStoreError(
                f"{self.podman_bin} volume exists failed (exit {result.returncode}): {message}"
            )
        return result.returncode == 0

    def list_volumes(self) -> set[str]:
        """Return the names of every existing volume."""
        result = self._volume("ls", "--format", "{{.Name}}")
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def export(self, name: str, archive: Path) -> None:
        """Export volume *name* as a tar archive at *archive*."""
        archive.parent.mkdir(parents=True, exist_ok=True)
        self._volume("export", name, "--output", str(archive))

    def remove(self, name: str) -> None:
        """Delete volume *name*."""
        self._volume("rm", name)

    def create(self, name: str) -> None:
        """Create volume *name*."""
        self._volume("create", name)

    def import_volume(self, name: str, archive: Path) -> None:
        """Import the tar *archive* into volume *name*."""
        self._volume("import", name, str(archive))

    def _volume(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [self.podman_bin, "volume", *args]
        return run_command(
            command,
            error_cls=VolumeStoreError,
            error_prefix=f"{self.podman_bin} volume {args[0]}",
            check=check,
        )


__all__ = ["PodmanVolumeStore", "VolumeStoreError"]
