"""Process exit codes returned by the quadctl CLI."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status of a quadctl command."""

    OK = 0
    #: Unit files failed validation, or the arguments were rejected.
    VALIDATION = 2
    #: Configuration could not be loaded.
    ENVIRONMENT = 3
    #: systemd, podman, git or the filesystem failed mid-operation.
    PROVIDER = 4
