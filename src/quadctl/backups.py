"""Snapshot and restore installed unit-sets, including their named volumes.

Layout below ``backups_dir``::

    <name>/<timestamp_id>/
        files/<unit files...>
        manifest.yml
        volumes/<volume>.tar

Snapshots written before ``files/`` existed keep their unit files at the
snapshot root and are still restorable.

Timestamp ids (``20261018T101500123456Z``) sort chronologically, so the
lexicographically greatest id is always the newest snapshot.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path

from .archive import compute_checksum, copy_into, list_tree_files, remove_tree, replace_directory
from .batch import BatchResult, ItemResult, select_names
from .config import AppConfig, ConfigError, UnitSetConfig
from .locking import LockError, LockManager
from .providers.base import ServiceController, VolumeStore
from .state.manifests import BackupManifest, ManifestError, ManifestStore, VolumeArchive
from .units import (
    UnitFile,
    UnitKind,
    UnitParseError,
    discover_unit_files,
    parse_unit_file,
    unit_set_services,
    volume_name_map,
)

LOGGER = logging.getLogger(__name__)

FILES_DIR = "files"
MANIFEST_NAME = "manifest.yml"
VOLUMES_DIR = "volumes"
SNAPSHOT_METADATA = (MANIFEST_NAME, VOLUMES_DIR)
SAFETY_REASON = "pre-restore"
_ID_FORMAT = "%Y%m%dT%H%M%S%fZ"
_MAX_COLLISIONS = 99

Clock = Callable[[], datetime]


class BackupError(RuntimeError):
    """Raised when a snapshot cannot be created."""


class RestoreError(RuntimeError):
    """Raised when a restore cannot start or does not complete.

    ``partial`` is ``True`` when the unit-set was left in a modified state:
    services stopped, files or volumes partially replaced. When a safety
    snapshot was taken and the restore failed midway, ``rolled_back`` says
    whether the previous state was reinstated and ``safety_backup_id`` names
    the snapshot kept for manual recovery.
    """

    def __init__(
        self,
        message: str,
        *,
        partial: bool = False,
        failed_volumes: Sequence[str] = (),
        not_found: bool = False,
        rolled_back: bool = False,
        safety_backup_id: str | None = None,
    ) -> None:
        """Record whether the failure left a partial restore behind."""
        super().__init__(message)
        self.partial = partial
        self.not_found = not_found
        self.failed_volumes = list(failed_volumes)
        self.rolled_back = rolled_back
        self.safety_backup_id = safety_backup_id


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _format_iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class BackupSnapshot:
    """A snapshot directory and its manifest (``None`` when unreadable or absent)."""

    name: str
    backup_id: str
    path: Path
    manifest: BackupManifest | None = None
    warnings: tuple[str, ...] = ()

    @property
    def backed_up_at(self) -> str | None:
        """Return the manifest timestamp, if known."""
        return self.manifest.backed_up_at if self.manifest else None

    @property
    def legacy_layout(self) -> bool:
        """Return ``True`` for snapshots keeping unit files at the snapshot root."""
        return not (self.path / FILES_DIR).is_dir()

    @property
    def files_dir(self) -> Path:
        """Return the directory holding the snapshot's unit files."""
        return self.path if self.legacy_layout else self.path / FILES_DIR

    def volume_archives(self) -> list[VolumeArchive]:
        """Return archived volumes, falling back to ``volumes/*.tar`` for old snapshots."""
        if self.manifest is not None and self.manifest.volumes:
            return list(self.manifest.volumes)
        volumes_dir = self.path / VOLUMES_DIR
        if not volumes_dir.is_dir():
            return []
        return [
            VolumeArchive(
                name=archive.stem,
                archive=f"{VOLUMES_DIR}/{archive.name}",
                size_bytes=archive.stat().st_size,
            )
            for archive in sorted(volumes_dir.glob("*.tar"))
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "backup_id": self.backup_id,
            "path": str(self.path),
            "backed_up_at": self.backed_up_at,
            "reason": self.manifest.reason if self.manifest else None,
            "files": len(self.manifest.files) if self.manifest else None,
            "volumes": [volume.name for volume in self.volume_archives()],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class RestoreOutcome:
    """Summary of a completed restore."""

    name: str
    backup_id: str
    files: tuple[str, ...]
    volumes: tuple[str, ...]
    services: tuple[str, ...]
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "backup_id": self.backup_id,
            "files": list(self.files),
            "volumes": list(self.volumes),
            "services": list(self.services),
            "lock_wait_ms": self.lock_wait_ms,
        }


@dataclass
class BackupManager:
    """Create, list and restore unit-set snapshots."""

    config: AppConfig
    services: ServiceController
    volumes: VolumeStore
    locks: LockManager | None = None
    store: ManifestStore = field(default_factory=ManifestStore)
    clock: Clock = _now

    # Paths ---------------------------------------------------------------
    @property
    def root(self) -> Path:
        """Return the backups root directory."""
        return self.config.backups_dir

    def snapshot_dir(self, name: str, backup_id: str) -> Path:
        """Return the directory of snapshot *backup_id* for *name*."""
        return self.root / name / backup_id

    def generate_identifier(self, name: str) -> str:
        """Return a time-sortable identifier unused in *name*'s history."""
        base = self.clock().astimezone(UTC).strftime(_ID_FORMAT)
        candidate = base
        for counter in range(1, _MAX_COLLISIONS + 1):
            if not self.snapshot_dir(name, candidate).exists():
                return candidate
            candidate = f"{base}-{counter:02d}"
        raise BackupError(f"Could not allocate a unique backup id for '{name}' at {base}.")

    # Backup --------------------------------------------------------------
    def backup(
        self,
        names: str | Sequence[str],
        *,
        scope: str | None = None,
        reason: str = "manual",
    ) -> BatchResult:
        """Snapshot each selected, installed unit-set."""
        installed = [
            unit_set.name
            for unit_set in self.config.unit_sets
            if not unit_set.managed_externally
            and (scope is None or unit_set.scope == scope)
            and self.config.install_dir(unit_set).is_dir()
        ]
        selected = select_names(
            names,
            everything=installed,
            known=self.config.unit_set_names(),
        )
        batch = BatchResult("backup")
        for name in selected:
            item = batch.add(ItemResult(name))
            unit_set = self._unit_set(name)
            if unit_set.managed_externally:
                item.skip("managed externally")
                continue
            if scope is not None and unit_set.scope != scope:
                item.skip(f"scope is {unit_set.scope}, not {scope}")
                continue
            if not self.config.install_dir(unit_set).is_dir():
                item.skip("not installed; nothing to back up")
                continue
            try:
                with self._locked(name) as wait_ms:
                    item.detail["lock_wait_ms"] = wait_ms
                    snapshot = self.create_snapshot(unit_set, reason=reason)
            except (BackupError, LockError) as exc:
                item.fail(str(exc))
                continue
            except OSError as exc:
                item.fail(f"backup failed: {exc}")
                continue
            item.message = f"created backup {snapshot.backup_id}"
            item.warnings.extend(snapshot.warnings)
            item.detail["backup_id"] = snapshot.backup_id
            item.detail["path"] = str(snapshot.path)
        return batch

    def create_snapshot(self, unit_set: UnitSetConfig, *, reason: str = "manual") -> BackupSnapshot:
        """Snapshot the live directory of *unit_set*; the caller holds its lock.

        Volume export failures become warnings on the returned snapshot.
        """
        install_dir = self.config.install_dir(unit_set)
        if not install_dir.is_dir():
            raise BackupError(f"Unit-set '{unit_set.name}' is not installed at {install_dir}.")

        backup_id = self.generate_identifier(unit_set.name)
        snapshot_dir = self.snapshot_dir(unit_set.name, backup_id)
        files_dir = snapshot_dir / FILES_DIR
        try:
            files_dir.mkdir(parents=True)
            copy_into(install_dir, files_dir)
        except OSError as exc:
            remove_tree(snapshot_dir)
            raise BackupError(f"Failed to copy {install_dir} into {snapshot_dir}: {exc}") from exc

        files = list_tree_files(files_dir)
        warnings: list[str] = []
        archives: list[VolumeArchive] = []
        for volume in self._referenced_volumes(files_dir):
            archive = self._export_volume(snapshot_dir, volume, warnings)
            if archive is not None:
                archives.append(archive)

        manifest = BackupManifest(
            name=unit_set.name,
            scope=unit_set.scope,
            backed_up_at=_format_iso(self.clock()),
            timestamp_id=backup_id,
            reason=reason,
            files=tuple(files),
            volumes=tuple(archives),
        )
        try:
            self.store.write(snapshot_dir / MANIFEST_NAME, manifest.to_dict())
        except ManifestError as exc:
            remove_tree(snapshot_dir)
            raise BackupError(str(exc)) from exc
        LOGGER.info(
            "Created backup %s for %s (%d volumes)", backup_id, unit_set.name, len(archives)
        )
        return BackupSnapshot(
            name=unit_set.name,
            backup_id=backup_id,
            path=snapshot_dir,
            manifest=manifest,
            warnings=tuple(warnings),
        )


    def _referenced_volumes(self, directory: Path) -> list[str]:
        unit_paths, _ = discover_unit_files(directory)
        units: list[UnitFile] = []
        for path in unit_paths:
            if UnitKind.from_path(path) not in (UnitKind.CONTAINER, UnitKind.VOLUME):
                continue
            try:
                units.append(parse_unit_file(path, root=directory))
            except (OSError, UnicodeDecodeError, UnitParseError) as exc:
                LOGGER.warning("Skipping unreadable unit %s during backup: %s", path, exc)
        names = volume_name_map(units)
        volumes: list[str] = []
        for unit in units:
            if unit.kind is not UnitKind.CONTAINER:
                continue
            for ref in unit.volume_refs(names):
                if ref.volume_name not in volumes:
                    volumes.append(ref.volume_name)
        return volumes

    def _export_volume(
        self,
        snapshot_dir: Path,
        volume: str,
        warnings: list[str],
    ) -> VolumeArchive | None:
        try:
            if not self.volumes.exists(volume):
                return None
        except (RuntimeError, OSError) as exc:
            warnings.append(f"could not check volume '{volume}': {exc}")
            return None
        relative = f"{VOLUMES_DIR}/{volume}.tar"
        archive_path = snapshot_dir / relative
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.volumes.export(volume, archive_path)
            return VolumeArchive(
                name=volume,
                archive=relative,
                size_bytes=archive_path.stat().st_size,
                checksum=compute_checksum(archive_path),
            )
        except (RuntimeError, OSError) as exc:
            archive_path.unlink(missing_ok=True)
            warnings.append(f"failed to export volume '{volume}': {exc}")
            LOGGER.warning("Volume export failed for %s: %s", volume, exc)
            return None

    # Listing -------------------------------------------------------------
    def list_backups(self, name: str | None = None) -> list[BackupSnapshot]:
        """Return snapshots for *name* (or every name), newest first."""
        if name is not None:
            names = [name]
        elif self.root.is_dir():
            names = sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())
        else:
            names = []
        snapshots: list[BackupSnapshot] = []
        for unit_name in names:
            base = self.root / unit_name
            if not base.is_dir():
                continue
            for entry in base.iterdir():
                if entry.is_dir():
                    snapshots.append(self._load_snapshot(unit_name, entry))
        snapshots.sort(key=lambda snap: (snap.backup_id, snap.name), reverse=True)
        return snapshots

    def latest(self, name: str) -> BackupSnapshot | None:
        """Return the newest snapshot of *name*, if any."""
        snapshots = self.list_backups(name)
        return snapshots[0] if snapshots else None

    def _load_snapshot(self, name: str, path: Path) -> BackupSnapshot:
        try:
            data = self.store.read(path / MANIFEST_NAME)
            manifest = BackupManifest.from_dict(data) if data is not None else None
        except ManifestError as exc:
            return BackupSnapshot(name, path.name, path, None, (f"unreadable manifest: {exc}",))
        return BackupSnapshot(name, path.name, path, manifest)


    # Restore -------------------------------------------------------------
    def restore(self, name: str, backup_id: str | None = None) -> RestoreOutcome:
        """Replace *name*'s live files and volumes with a snapshot.

        The newest snapshot is used when *backup_id* is omitted. An installed
        unit-set is snapshotted first (reason ``pre-restore``); when the restore
        fails after services were stopped, that safety snapshot is put back and
        kept for inspection. It is deleted once the restore succeeds.
        """
        unit_set = self._unit_set(name)
        if unit_set.managed_externally:
            raise RestoreError(f"Unit-set '{name}' is managed externally; refusing to restore.")
        try:
            with self._locked(name) as wait_ms:
                outcome = self._restore_locked(unit_set, backup_id)
        except LockError as exc:
            raise RestoreError(str(exc)) from exc
        except OSError as exc:
            raise RestoreError(f"Restore of '{name}' failed: {exc}") from exc
        return replace(outcome, lock_wait_ms=wait_ms)

    def _restore_locked(self, unit_set: UnitSetConfig, backup_id: str | None) -> RestoreOutcome:
        name = unit_set.name
        snapshot = self._select_snapshot(name, backup_id)
        for archive in snapshot.volume_archives():
            self._verify_archive(snapshot, archive)

        install_dir = self.config.install_dir(unit_set)
        safety: BackupSnapshot | None = None
        if install_dir.is_dir():
            try:
                safety = self.create_snapshot(unit_set, reason=SAFETY_REASON)
            except BackupError as exc:
                raise RestoreError(f"Safety snapshot failed; nothing was changed: {exc}") from exc
            for warning in safety.warnings:
                LOGGER.warning("Safety snapshot of %s: %s", name, warning)

        try:
            restored, started = self._apply_snapshot(unit_set, snapshot)
        except RestoreError as exc:
            if safety is None:
                raise
            if not exc.partial:
                self._discard_safety(safety)
                raise
            raise self._roll_back(unit_set, safety, exc) from exc
        if safety is not None:
            self._discard_safety(safety)

        files = snapshot.manifest.files if snapshot.manifest else tuple(
            list_tree_files(install_dir)
        )
        return RestoreOutcome(
            name=name,
            backup_id=snapshot.backup_id,
            files=tuple(files),
            volumes=tuple(restored),
            services=tuple(started),
        )

    def _apply_snapshot(
        self,
        unit_set: UnitSetConfig,
        snapshot: BackupSnapshot,
        *,
        stop: bool = True,
    ) -> tuple[list[str], list[str]]:
        """Stop, replace files and volumes from *snapshot*, reload, then start.

        Returns the imported volumes and the started services.
        """
        name = unit_set.name
        install_dir = self.config.install_dir(unit_set)
        scope = unit_set.scope
        running = unit_set_services(install_dir) if stop and install_dir.is_dir() else []
        stopped = 0
        for service in reversed(running):
            try:
                self.services.stop(service, scope)
            except (RuntimeError, OSError) as exc:
                raise RestoreError(
                    f"Failed to stop {service}: {exc}", partial=stopped > 0
                ) from exc
            stopped += 1

        exclude = SNAPSHOT_METADATA if snapshot.legacy_layout else ()
        try:
            replace_directory(snapshot.files_dir, install_dir, exclude=exclude)
        except OSError as exc:
            raise RestoreError(
                f"Failed to replace {install_dir} from backup {snapshot.backup_id}: {exc}",
                partial=True,
            ) from exc

        failed: list[str] = []
        failed_names: list[str] = []
        restored: list[str] = []
        for archive in snapshot.volume_archives():
            try:
                self._import_volume(snapshot, archive)
            except (RuntimeError, OSError) as exc:
                LOGGER.error("Volume import failed for %s: %s", archive.name, exc)
                failed.append(f"{archive.name}: {exc}")
                failed_names.append(archive.name)
            else:
                restored.append(archive.name)

        try:
            self.services.reload(scope)
        except (RuntimeError, OSError) as exc:
            raise RestoreError(f"Failed to reload systemd: {exc}", partial=True) from exc

        if failed:
            raise RestoreError(
                f"Restored files for '{name}' from {snapshot.backup_id} but {len(failed)} "
                "volume(s) failed to import; services were not started: " + "; ".join(failed),
                partial=True,
                failed_volumes=failed_names,
            )

        started = unit_set_services(install_dir)
        for service in started:
            try:
                self.services.start(service, scope)
            except (RuntimeError, OSError) as exc:
                raise RestoreError(f"Failed to start {service}: {exc}", partial=True) from exc
        return restored, started

    def _roll_back(
        self,
        unit_set: UnitSetConfig,
        safety: BackupSnapshot,
        error: RestoreError,
    ) -> RestoreError:
        LOGGER.warning(
            "Restore of %s failed, rolling back to %s: %s", unit_set.name, safety.backup_id, error
        )
        try:
            self._apply_snapshot(unit_set, safety, stop=False)
        except RestoreError as rollback_error:
            LOGGER.error("Rollback of %s failed: %s", unit_set.name, rollback_error)
            return RestoreError(
                f"Restore failed and rollback failed: {rollback_error}. "
                f"Original error: {error}. Safety snapshot {safety.backup_id} "
                "was kept for manual recovery.",
                partial=True,
                failed_volumes=error.failed_volumes,
                safety_backup_id=safety.backup_id,
            )
        return RestoreError(
            f"Restore failed, rolled back to the previous state: {error}",
            failed_volumes=error.failed_volumes,
            rolled_back=True,
            safety_backup_id=safety.backup_id,
        )

    def _discard_safety(self, safety: BackupSnapshot) -> None:
        try:
            remove_tree(safety.path)
        except OSError as exc:
            LOGGER.warning("Could not remove safety snapshot %s: %s", safety.path, exc)

    def _select_snapshot(self, name: str, backup_id: str | None) -> BackupSnapshot:
        if backup_id is None:
            snapshot = self.latest(name)
            if snapshot is None:
                raise RestoreError(f"No backups found for '{name}'.", not_found=True)
            return snapshot
        normalized = backup_id.strip()
        if not normalized or "/" in normalized or normalized in {".", ".."}:
            raise RestoreError(f"Backup '{backup_id}' not found for '{name}'.", not_found=True)
        path = self.snapshot_dir(name, normalized)
        if not path.is_dir():
            raise RestoreError(f"Backup '{backup_id}' not found for '{name}'.", not_found=True)
        return self._load_snapshot(name, path)

    def _verify_archive(self, snapshot: BackupSnapshot, archive: VolumeArchive) -> None:
        path = snapshot.path / archive.archive
        if not path.is_file():
            raise RestoreError(
                f"Volume archive {path} is missing from backup {snapshot.backup_id}."
            )
        if archive.checksum and compute_checksum(path) != archive.checksum:
            raise RestoreError(f"Checksum mismatch for volume archive {path}.")

    def _import_volume(self, snapshot: BackupSnapshot, archive: VolumeArchive) -> None:
        if self.volumes.exists(archive.name):
            self.volumes.remove(archive.name)
        self.volumes.create(archive.name)
        self.volumes.import_volume(archive.name, snapshot.path / archive.archive)

    # Helpers -------------------------------------------------------------
    def _unit_set(self, name: str) -> UnitSetConfig:
        unit_set = self.config.unit_set(name)
        if unit_set is None:
            raise ConfigError(f"Unknown unit-set '{name}'.")
        return unit_set

    @contextmanager
    def _locked(self, name: str) -> Iterator[int]:
        if self.locks is None:
            yield 0
            return
        with self.locks.unit_lock(name) as handle:
            yield handle.wait_ms


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupSnapshot",
    "RestoreError",
    "RestoreOutcome",
]
