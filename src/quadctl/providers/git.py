"""Source fetcher for git repositories and local directories."""
from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .process import run_command


class FetchError(RuntimeError):
    """Raised when a unit-set source cannot be retrieved."""


@dataclass(slots=True)
class GitSourceFetcher:
    """Fetch unit-set sources with ``git clone`` or a plain directory copy."""

    git_bin: str = "git"

    def fetch(self, source: str, branch: str, dest: Path, subpath: str | None = None) -> None:
        """Populate *dest* with the files of *source* (``.git`` excluded)."""
        local = _local_directory(source)
        if local is not None and not (local / ".git").exists():
            _copy_tree(_resolve_subpath(local, subpath, source), dest)
            return

        with tempfile.TemporaryDirectory(prefix="quadctl-fetch-") as tmp:
            checkout = Path(tmp) / "checkout"
            args = [self.git_bin, "clone", "--depth", "1"]
            if branch:
                args.extend(["--branch", branch])
            args.extend([str(local) if local is not None else source, str(checkout)])
            run_command(args, error_cls=FetchError, error_prefix=f"{self.git_bin} clone {source}")
            _copy_tree(_resolve_subpath(checkout, subpath, source), dest)


def _local_directory(source: str) -> Path | None:
    text = source.strip()
    if text.startswith("file://"):
        text = text[len("file://") :]
    elif "://" in text or text.startswith("git@"):
        return None
    path = Path(text).expanduser()
    if path.is_dir():
        return path
    return None


def _resolve_subpath(root: Path, subpath: str | None, source: str) -> Path:
    if not subpath:
        return root
    candidate = root / subpath
    if not candidate.is_dir():
        raise FetchError(f"Subpath '{subpath}' not found in {source}.")
    return candidate


def _copy_tree(source: Path, dest: Path) -> None:
    try:
        shutil.copytree(source, dest, ignore=shutil.ignore_patterns(".git"), dirs_exist_ok=True)
    except OSError as exc:
        raise FetchError(f"Failed to copy {source} to {dest}: {exc}") from exc


__all__ = ["FetchError", "GitSourceFetcher"]
