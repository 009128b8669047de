"""Persisted quadctl state (staging and backup manifests)."""
from __future__ import annotations

from .manifests import BackupManifest, ManifestError, ManifestStore, StagingManifest, VolumeArchive

__all__ = ["BackupManifest", "ManifestError", "ManifestStore", "StagingManifest", "VolumeArchive"]
