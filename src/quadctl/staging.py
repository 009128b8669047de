"""Stage, review, apply and discard candidate unit-set updates.

A staged unit-set lives in two places below ``staging_dir``:

* ``units/<name>/`` holds the fetched and validated files;
* ``manifests/<name>.yml`` records where they came from.

Both are created together by :meth:`StagingManager.stage` and removed together
by :meth:`StagingManager.apply` or :meth:`StagingManager.discard`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .archive import list_tree_files, remove_tree, replace_directory, tree_checksum
from .backups import BackupError, BackupManager
from .batch import BatchResult, ItemResult, select_names
from .config import AppConfig, ConfigError, UnitSetConfig
from .locking import LockError, LockManager
from .providers.base import Differ, ServiceController, SourceFetcher
from .providers.differ import DifflibDiffer
from .providers.git import FetchError
from .state.manifests import ManifestError, ManifestStore, StagingManifest
from .units import UnitKind, unit_set_services
from .validation import ValidationError, Validator

LOGGER = logging.getLogger(__name__)

DIFF_STATUSES = ("added", "modified", "removed")
_SERVICE_KINDS = (UnitKind.CONTAINER, UnitKind.POD, UnitKind.KUBE)


class StagingError(RuntimeError):
    """Raised when a staging operation cannot proceed."""


class ApplyError(StagingError):
    """Raised when stopping, replacing or starting a unit-set fails during apply."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class FileDiff:
    """Difference for one file between the live and staged trees."""

    path: str
    status: str
    diff: str = ""

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"path": self.path, "status": self.status, "diff": self.diff}


@dataclass(frozen=True)
class DiffResult:
    """File-by-file comparison of a staged unit-set against its installation."""

    name: str
    installed: bool
    files: tuple[FileDiff, ...] = ()
    services_affected: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        """Return ``True`` when any file was added, removed or modified."""
        return bool(self.files)

    def by_status(self, status: str) -> list[FileDiff]:
        """Return the file diffs with *status*."""
        return [entry for entry in self.files if entry.status == status]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "installed": self.installed,
            "has_changes": self.has_changes,
            "files": [entry.to_dict() for entry in self.files],
            "services_affected": list(self.services_affected),
        }


@dataclass(frozen=True)
class StagedEntry:
    """A staged unit-set as found on disk."""

    name: str
    path: Path
    manifest: StagingManifest | None
    has_files: bool
    error: str | None = None

    @property
    def orphan(self) -> bool:
        """Return ``True`` when only one of the directory and manifest exists."""
        return self.manifest is None or not self.has_files

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        manifest = self.manifest
        return {
            "name": self.name,
            "path": str(self.path),
            "source": manifest.source if manifest else None,
            "branch": manifest.branch if manifest else None,
            "staged_at": manifest.staged_at if manifest else None,
            "files": len(manifest.files) if manifest else None,
            "orphan": self.orphan,
            "error": self.error,
        }


@dataclass
class StagingManager:
    """Drive the fetch → validate → review → apply/discard workflow."""

    config: AppConfig
    fetcher: SourceFetcher
    validator: Validator
    backups: BackupManager
    services: ServiceController
    differ: Differ = field(default_factory=DifflibDiffer)
    locks: LockManager | None = None
    store: ManifestStore = field(default_factory=ManifestStore)
    clock: Callable[[], datetime] = _now
    sleep: Callable[[float], None] = time.sleep

    # Paths ---------------------------------------------------------------
    @property
    def units_root(self) -> Path:
        """Return the directory holding staged unit-set trees."""
        return self.config.staging_dir / "units"

    @property
    def manifests_root(self) -> Path:
        """Return the directory holding staging manifests."""
        return self.config.staging_dir / "manifests"

    def staged_dir(self, name: str) -> Path:
        """Return the staged tree for *name*."""
        return self.units_root / name

    def manifest_path(self, name: str) -> Path:
        """Return the staging manifest path for *name*."""
        return self.manifests_root / f"{name}.yml"

    def read_manifest(self, name: str) -> StagingManifest | None:
        """Return the staging manifest for *name*, if present."""
        data = self.store.read(self.manifest_path(name))
        if data is None:
            return None
        return StagingManifest.from_dict(data)

    def staged_names(self) -> list[str]:
        """Return the names that have a staging manifest."""
        if not self.manifests_root.is_dir():
            return []
        return sorted(path.stem for path in self.manifests_root.glob("*.yml"))

    # Stage ---------------------------------------------------------------
    def stage(self, names: str | Sequence[str]) -> BatchResult:
        """Fetch and validate each selected unit-set into the staging area."""
        selected = select_names(
            names,
            everything=self.config.unit_set_names(),
            known=self.config.unit_set_names(),
        )
        batch = BatchResult("stage")
        for name in selected:
            item = batch.add(ItemResult(name))
            unit_set = self._unit_set(name)
            if unit_set.managed_externally:
                item.skip("managed externally")
                continue
            if not unit_set.is_fetchable:
                item.skip("no fetchable source configured")
                continue
            try:
                with self._locked(name) as wait_ms:
                    item.detail["lock_wait_ms"] = wait_ms
                    self._stage_one(unit_set, item)
            except LockError as exc:
                item.fail(str(exc))
            except OSError as exc:
                item.fail(f"staging failed: {exc}")
        return batch

    def _stage_one(self, unit_set: UnitSetConfig, item: ItemResult) -> None:
        name = unit_set.name
        try:
            previous = self.read_manifest(name)
        except ManifestError as exc:
            LOGGER.warning("Ignoring unreadable staging manifest for %s: %s", name, exc)
            previous = None
        self._remove_staged(name)

        dest = self.staged_dir(name)
        dest.mkdir(parents=True, exist_ok=True)
        source = unit_set.source or ""
        try:
            self.fetcher.fetch(source, unit_set.branch, dest, unit_set.subpath)
        except (FetchError, OSError) as exc:
            remove_tree(dest)
            item.fail(f"fetch failed: {exc}")
            item.detail["error_kind"] = "fetch"
            return

        report = self.validator.validate(dest, check_conflicts=True)
        item.warnings.extend(str(issue) for issue in report.warnings)
        item.detail["report"] = report.to_dict()
        if not report.ok:
            remove_tree(dest)
            error = ValidationError(name, report)
            item.fail(str(error), errors=[str(issue) for issue in report.errors])
            item.detail["error_kind"] = "validation"
            return

        files = list_tree_files(dest)
        checksum = tree_checksum(dest, files)
        staged_at = self.clock().isoformat(timespec="seconds").replace("+00:00", "Z")
        if (
            previous is not None
            and previous.checksum == checksum
            and previous.source == source
            and previous.branch == unit_set.branch
        ):
            staged_at = previous.staged_at
        manifest = StagingManifest(
            name=name,
            source=source,
            branch=unit_set.branch,
            staged_at=staged_at,
            files=tuple(files),
            checksum=checksum,
        )
        try:
            self.store.write(self.manifest_path(name), manifest.to_dict())
        except ManifestError as exc:
            remove_tree(dest)
            item.fail(str(exc))
            return
        item.message = f"staged {len(files)} file(s)"
        item.detail["files"] = list(files)

    # Diff ----------------------------------------------------------------
    def diff(self, name: str) -> DiffResult:
        """Compare the staged files of *name* with its live installation."""
        unit_set = self._unit_set(name)
        manifest = self.read_manifest(name)
        if manifest is None:
            raise StagingError(f"Unit-set '{name}' is not staged.")
        staged_dir = self.staged_dir(name)
        if not staged_dir.is_dir():
            raise StagingError(f"Staged files for '{name}' are missing from {staged_dir}.")

        install_dir = self.config.install_dir(unit_set)
        installed = install_dir.is_dir()
        staged_files = set(list_tree_files(staged_dir))
        live_files = set(list_tree_files(install_dir)) if installed else set()

        entries: list[FileDiff] = []
        for relative in sorted(staged_files | live_files):
            old_path = install_dir / relative
            new_path = staged_dir / relative
            if relative not in live_files:
                status = "added"
                old_text, new_text = "", _read_text(new_path)
            elif relative not in staged_files:
                status = "removed"
                old_text, new_text = _read_text(old_path), ""
            else:
                if old_path.read_bytes() == new_path.read_bytes():
                    continue
                status = "modified"
                old_text, new_text = _read_text(old_path), _read_text(new_path)
            rendered = self.differ.unified(
                old_text,
                new_text,
                f"installed/{relative}",
                f"staged/{relative}",
            )
            entries.append(FileDiff(path=relative, status=status, diff=rendered))

        affected: list[str] = []
        for entry in entries:
            kind = UnitKind.from_path(entry.path)
            if entry.status != "removed" and kind in _SERVICE_KINDS:
                affected.append(kind.service_name(Path(entry.path).stem))
        return DiffResult(
            name=name,
            installed=installed,
            files=tuple(entries),
            services_affected=tuple(sorted(set(affected))),
        )

    # Apply ---------------------------------------------------------------
    def apply(self, names: str | Sequence[str]) -> BatchResult:
        """Install each selected staged unit-set, backing up the current one first."""
        staged = self.staged_names()
        selected = select_names(
            names,
            everything=staged,
            known=self.config.unit_set_names(),
        )
        batch = BatchResult("apply")
        for name in selected:
            item = batch.add(ItemResult(name))
            unit_set = self.config.unit_set(name)
            if unit_set is None:
                item.fail("staged but no longer configured; discard it instead")
                continue
            if unit_set.managed_externally:
                item.fail("managed externally; refusing to overwrite")
                continue
            try:
                with self._locked(name) as wait_ms:
                    item.detail["lock_wait_ms"] = wait_ms
                    self._apply_one(unit_set, item)
            except (StagingError, LockError, ManifestError, OSError) as exc:
                item.fail(str(exc))
        return batch

    def _apply_one(self, unit_set: UnitSetConfig, item: ItemResult) -> None:
        name = unit_set.name
        scope = unit_set.scope
        manifest = self.read_manifest(name)
        staged_dir = self.staged_dir(name)
        if manifest is None:
            raise StagingError(f"Unit-set '{name}' is not staged.")
        if not staged_dir.is_dir():
            raise StagingError(f"Staged files for '{name}' are missing from {staged_dir}.")

        install_dir = self.config.install_dir(unit_set)
        if install_dir.is_dir():
            try:
                snapshot = self.backups.create_snapshot(unit_set, reason="pre-apply")
            except BackupError as exc:
                raise ApplyError(f"Pre-apply backup failed; nothing was changed: {exc}") from exc
            item.detail["backup_id"] = snapshot.backup_id
            item.warnings.extend(snapshot.warnings)
            for service in reversed(unit_set_services(install_dir)):
                self._call(self.services.stop, service, scope, action="stop")

        try:
            replace_directory(staged_dir, install_dir)
        except OSError as exc:
            raise ApplyError(f"Failed to install files into {install_dir}: {exc}") from exc

        try:
            self.services.reload(scope)
        except (RuntimeError, OSError) as exc:
            raise ApplyError(f"Failed to reload systemd: {exc}") from exc

        started = unit_set_services(install_dir)
        for service in started:
            self._call(self.services.start, service, scope, action="start")
        if unit_set.setup_delay > 0:
            self.sleep(unit_set.setup_delay)

        self._remove_staged(name)
        item.message = f"applied {len(manifest.files)} file(s)"
        item.detail["services"] = started

    @staticmethod
    def _call(
        operation: Callable[[str, str], None],
        service: str,
        scope: str,
        *,
        action: str,
    ) -> None:
        try:
            operation(service, scope)
        except (RuntimeError, OSError) as exc:
            raise ApplyError(f"Failed to {action} {service}: {exc}") from exc

    # Discard -------------------------------------------------------------
    def discard(self, names: str | Sequence[str]) -> BatchResult:
        """Delete staged artifacts without touching installed files or services."""
        staged = self.staged_names()
        selected = select_names(
            names,
            everything=staged,
            known=[*self.config.unit_set_names(), *staged],
        )
        batch = BatchResult("discard")
        for name in selected:
            item = batch.add(ItemResult(name))
            if not self.manifest_path(name).exists() and not self.staged_dir(name).exists():
                item.skip("nothing staged")
                continue
            try:
                with self._locked(name) as wait_ms:
                    item.detail["lock_wait_ms"] = wait_ms
                    self._remove_staged(name)
            except (LockError, OSError) as exc:
                item.fail(str(exc))
                continue
            item.message = "discarded"
        return batch

    # Listing -------------------------------------------------------------
    def list_staged(self) -> list[StagedEntry]:
        """Return every staged unit-set, including orphaned halves."""
        names: set[str] = set(self.staged_names())
        if self.units_root.is_dir():
            names.update(entry.name for entry in self.units_root.iterdir() if entry.is_dir())
        entries: list[StagedEntry] = []
        for name in sorted(names):
            error: str | None = None
            try:
                manifest = self.read_manifest(name)
            except ManifestError as exc:
                manifest, error = None, str(exc)
            entries.append(
                StagedEntry(
                    name=name,
                    path=self.staged_dir(name),
                    manifest=manifest,
                    has_files=self.staged_dir(name).is_dir(),
                    error=error,
                )
            )
        return entries

    # Helpers -------------------------------------------------------------
    def _remove_staged(self, name: str) -> None:
        remove_tree(self.staged_dir(name))
        self.manifest_path(name).unlink(missing_ok=True)

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


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


__all__ = [
    "DIFF_STATUSES",
    "ApplyError",
    "DiffResult",
    "FileDiff",
    "StagedEntry",
    "StagingError",
    "StagingManager",
]
