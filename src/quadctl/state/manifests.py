"""Staging and backup manifests persisted as YAML.

Manifests are written atomically (temporary file + ``os.replace``) so a
crashed invocation never leaves a half-written manifest behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage quadctl state. Install with `pip install quadctl`."
    ) from exc


class ManifestError(RuntimeError):
    """Raised when a manifest cannot be read or written."""


@dataclass(frozen=True)
class ManifestStore:
    """Read and atomically write YAML manifests."""

    def read(self, path: Path) -> dict[str, object] | None:
        """Return the mapping stored at *path*, or ``None`` when missing."""
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise ManifestError(f"Failed to parse manifest {path}: {exc}") from exc
        except OSError as exc:
            raise ManifestError(f"Failed to read manifest {path}: {exc}") from exc
        if data is None:
            return None
        if not isinstance(data, Mapping):
            raise ManifestError(f"Manifest {path} must contain a mapping.")
        return dict(data)

    def write(self, path: Path, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to *path*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise ManifestError(f"Failed to write manifest {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True)
class StagingManifest:
    """Record of a staged unit-set awaiting apply or discard."""

    name: str
    source: str
    branch: str
    staged_at: str
    files: tuple[str, ...] = ()
    checksum: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "source": self.source,
            "branch": self.branch,
            "staged_at": self.staged_at,
            "files": list(self.files),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StagingManifest:
        """Build a manifest from its YAML mapping."""
        files = data.get("files") or []
        if not isinstance(files, list):
            raise ManifestError("Staging manifest 'files' must be a list.")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ManifestError("Staging manifest is missing 'name'.")
        return cls(
            name=name,
            source=str(data.get("source") or ""),
            branch=str(data.get("branch") or ""),
            staged_at=str(data.get("staged_at") or ""),
            files=tuple(str(item) for item in files),
            checksum=str(data.get("checksum") or ""),
        )


@dataclass(frozen=True)
class VolumeArchive:
    """A named volume exported into a backup snapshot."""

    name: str
    archive: str
    size_bytes: int
    checksum: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "archive": self.archive,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> VolumeArchive:
        """Build a volume entry from its YAML mapping."""
        name = str(data.get("name") or "")
        if not name:
            raise ManifestError("Backup volume entry is missing 'name'.")
        size = data.get("size_bytes", 0)
        checksum = data.get("checksum")
        return cls(
            name=name,
            archive=str(data.get("archive") or f"volumes/{name}.tar"),
            size_bytes=int(size) if isinstance(size, (int, float, str)) else 0,
            checksum=str(checksum) if checksum else None,
        )


@dataclass(frozen=True)
class BackupManifest:
    """Record of a single backup snapshot."""

    name: str
    scope: str
    backed_up_at: str
    timestamp_id: str
    reason: str = "manual"
    files: tuple[str, ...] = ()
    volumes: tuple[VolumeArchive, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "scope": self.scope,
            "backed_up_at": self.backed_up_at,
            "timestamp_id": self.timestamp_id,
            "reason": self.reason,
            "files": list(self.files),
            "volumes": [volume.to_dict() for volume in self.volumes],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackupManifest:
        """Build a manifest from its YAML mapping."""
        files = data.get("files") or []
        volumes = data.get("volumes") or []
        if not isinstance(files, list) or not isinstance(volumes, list):
            raise ManifestError("Backup manifest 'files' and 'volumes' must be lists.")
        return cls(
            name=str(data.get("name") or ""),
            scope=str(data.get("scope") or "user"),
            backed_up_at=str(data.get("backed_up_at") or ""),
            timestamp_id=str(data.get("timestamp_id") or ""),
            reason=str(data.get("reason") or "manual"),
            files=tuple(str(item) for item in files),
            volumes=tuple(
                VolumeArchive.from_dict(item) for item in volumes if isinstance(item, Mapping)
            ),
        )


__all__ = [
    "BackupManifest",
    "ManifestError",
    "ManifestStore",
    "StagingManifest",
    "VolumeArchive",
]
