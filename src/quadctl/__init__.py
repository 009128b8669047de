"""quadctl: stage, validate, apply and back up Podman quadlet unit-sets."""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Kept in sync with ``version`` in pyproject.toml.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the installed quadctl version."""
    return __version__
