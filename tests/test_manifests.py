"""Manifest store tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from quadctl.state import (
    BackupManifest,
    ManifestError,
    ManifestStore,
    StagingManifest,
    VolumeArchive,
)


def test_missing_manifest_reads_as_none(tmp_path: Path) -> None:
    """Absent and empty files both read as ``None``."""
    store = ManifestStore()
    empty = tmp_path / "empty.yml"
    empty.write_text("")

    assert store.read(tmp_path / "absent.yml") is None
    assert store.read(empty) is None


def test_write_creates_parents_and_restricts_mode(tmp_path: Path) -> None:
    """Writes land atomically with 0640 permissions and no temp files left over."""
    store = ManifestStore()
    path = tmp_path / "manifests" / "web.yml"
    manifest = StagingManifest(
        name="web",
        source="https://git.example/web.git",
        branch="main",
        staged_at="2026-01-01T00:00:00Z",
        files=("web.container",),
        checksum="abc",
    )

    store.write(path, manifest.to_dict())

    assert (path.stat().st_mode & 0o777) == 0o640
    assert [p.name for p in path.parent.iterdir()] == ["web.yml"]
    assert StagingManifest.from_dict(store.read(path) or {}) == manifest


def test_non_mapping_manifest_raises(tmp_path: Path) -> None:
    """Manifests must hold a mapping at the top level."""
    path = tmp_path / "bad.yml"
    path.write_text("- one\n- two\n")

    with pytest.raises(ManifestError, match="must contain a mapping"):
        ManifestStore().read(path)


def test_staging_manifest_requires_name() -> None:
    """A staging manifest without a name is rejected."""
    with pytest.raises(ManifestError, match="missing 'name'"):
        StagingManifest.from_dict({"source": "x"})


def test_backup_manifest_fills_defaults() -> None:
    """Older manifests without reason or volume details still load."""
    manifest = BackupManifest.from_dict(
        {
            "name": "db",
            "timestamp_id": "20260101T000000000000Z",
            "files": ["db.container"],
            "volumes": [{"name": "pgdata"}, "ignored"],
        }
    )

    assert manifest.scope == "user"
    assert manifest.reason == "manual"
    assert manifest.volumes == (
        VolumeArchive(name="pgdata", archive="volumes/pgdata.tar", size_bytes=0),
    )
    assert manifest.to_dict()["volumes"][0]["checksum"] is None


def test_backup_manifest_rejects_non_list_fields() -> None:
    """``files`` and ``volumes`` must be sequences."""
    with pytest.raises(ManifestError):
        BackupManifest.from_dict({"name": "db", "volumes": "pgdata"})
