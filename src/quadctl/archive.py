"""Filesystem helpers for snapshotting and replacing unit-set directories."""
from __future__ import annotations

import hashlib
import shutil
from collections.abc import Iterable
from pathlib import Path


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def list_tree_files(root: Path, *, exclude: Iterable[str] = ()) -> list[str]:
    """Return sorted POSIX paths of every file below *root*.

    Top-level entries named in *exclude* are skipped.
    """
    excluded = set(exclude)
    if not root.is_dir():
        return []
    files: list[str] = []
    for path in root.rglob("*"):
        relative = path.relative_to(root)
        if relative.parts[0] in excluded or not path.is_file():
            continue
        files.append(relative.as_posix())
    return sorted(files)


def tree_checksum(root: Path, files: Iterable[str]) -> str:
    """Return one SHA-256 over the relative paths and contents of *files*."""
    digest = hashlib.sha256()
    for relative in sorted(files):
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(compute_checksum(root / relative).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def copy_into(source: Path, destination: Path, *, exclude: Iterable[str] = ()) -> None:
    """Copy the tree at *source* into *destination*, skipping top-level *exclude* names."""
    excluded = set(exclude)
    destination.mkdir(parents=True, exist_ok=True)
    if not source.exists():
        return
    for entry in sorted(source.iterdir()):
        if entry.name in excluded:
            continue
        target = destination / entry.name
        if entry.is_dir():
            shutil.copytree(entry, target, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)


def replace_directory(source: Path, destination: Path, *, exclude: Iterable[str] = ()) -> None:
    """Make *destination* an exact copy of *source* (full replace, not merge)."""
    if destination.exists():
        shutil.rmtree(destination)
    copy_into(source, destination, exclude=exclude)


def remove_tree(path: Path) -> None:
    """Remove *path* if it exists."""
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


__all__ = [
    "compute_checksum",
    "copy_into",
    "list_tree_files",
    "remove_tree",
    "replace_directory",
    "tree_checksum",
]
