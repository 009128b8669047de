"""Collaborator interfaces consumed by the validator, staging and backup managers.

Each protocol has a process-backed implementation in this package and a
fake in the test suite, so the managers never shell out directly.
"""
from __future__ import annotations

from pathlib import Path
from typing import Protocol


class SourceFetcher(Protocol):
    """Retrieve a unit-set's files from a git or local source."""

    def fetch(self, source: str, branch: str, dest: Path, subpath: str | None = None) -> None:
        """Populate *dest* with the files of *source* at *branch*.

        Raises ``FetchError`` when the source cannot be retrieved.
        """
        ...


class ServiceController(Protocol):
    """Init-system operations scoped to ``user`` or ``system``."""

    def reload(self, scope: str) -> None:
        """Re-run generators so quadlet changes become visible."""
        ...

    def stop(self, unit: str, scope: str) -> None:
        """Stop *unit*."""
        ...

    def start(self, unit: str, scope: str) -> None:
        """Start *unit*."""
        ...


class VolumeStore(Protocol):
    """Named volume operations of the container engine."""

    def exists(self, name: str) -> bool:
        """Return ``True`` when volume *name* exists."""
        ...

    def list_volumes(self) -> set[str]:
        """Return the names of every existing volume."""
        ...

    def export(self, name: str, archive: Path) -> None:
        """Write the contents of volume *name* to the tar *archive*."""
        ...

    def remove(self, name: str) -> None:
        """Delete volume *name*."""
        ...

    def create(self, name: str) -> None:
        """Create an empty volume *name*."""
        ...

    def import_volume(self, name: str, archive: Path) -> None:
        """Load the tar *archive* into existing volume *name*."""
        ...


class PortScanner(Protocol):
    """Report host ports that currently have a listening socket."""

    def listening_ports(self) -> set[int]:
        """Return every listening TCP/UDP port number."""
        ...


class Differ(Protocol):
    """Produce unified diffs between two texts."""

    def unified(self, old_text: str, new_text: str, old_label: str, new_label: str) -> str:
        """Return a unified diff, empty when the texts are identical."""
        ...


__all__ = ["Differ", "PortScanner", "ServiceController", "SourceFetcher", "VolumeStore"]
