"""Structural, dependency and conflict validation for a unit-set directory.

The validator never stops at the first problem: it collects every error and
warning across all files so an operator sees the whole picture in one pass.
Errors block staging; warnings (including live port/volume conflicts) never do.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .providers.base import PortScanner, VolumeStore
from .units import (
    HARD_RELATIONS,
    DependencyEdge,
    PortBinding,
    UnitFile,
    UnitKind,
    UnitParseError,
    VolumeRef,
    discover_unit_files,
    parse_unit_file,
    volume_name_map,
)

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

DEPRECATED_CONTAINER_DIRECTIVES = ("ExecStart", "Command")
SECURITY_LABEL_DIRECTIVES = (
    "SecurityLabelDisable",
    "SecurityLabelType",
    "SecurityLabelLevel",
    "SecurityLabelFileType",
)
REQUIREMENT_RELATIONS = frozenset({"Requires", "Requisite", "Wants", "BindsTo", "PartOf"})


class Severity(str, Enum):
    """Whether an issue blocks use of the unit-set."""

    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding, optionally tied to a file."""

    severity: Severity
    code: str
    message: str
    file: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "file": self.file,
        }

    def __str__(self) -> str:
        prefix = f"{self.file}: " if self.file else ""
        return f"{prefix}{self.message}"


@dataclass(slots=True)
class ValidationReport:
    """Aggregated outcome of validating one unit-set directory."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    dependencies: list[DependencyEdge] = field(default_factory=list)
    ports: list[PortBinding] = field(default_factory=list)
    volumes: list[VolumeRef] = field(default_factory=list)
    units: list[str] = field(default_factory=list)
    passthrough: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no blocking error was found."""
        return not self.errors

    def error(self, code: str, message: str, file: str | None = None) -> None:
        """Record a blocking error."""
        self.errors.append(ValidationIssue(Severity.ERROR, code, message, file))

    def warning(self, code: str, message: str, file: str | None = None) -> None:
        """Record an advisory warning."""
        self.warnings.append(ValidationIssue(Severity.WARNING, code, message, file))

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "ok": self.ok,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "dependencies": [edge.to_dict() for edge in self.dependencies],
            "ports": [binding.to_dict() for binding in self.ports],
            "volumes": [ref.to_dict() for ref in self.volumes],
            "units": list(self.units),
            "passthrough": list(self.passthrough),
        }


class ValidationError(RuntimeError):
    """Raised when a unit-set fails validation; carries the full report."""

    def __init__(self, name: str, report: ValidationReport) -> None:
        """Summarise *report*'s errors for unit-set *name*."""
        details = "; ".join(str(issue) for issue in report.errors) or "unknown error"
        super().__init__(f"Validation failed for '{name}': {details}")
        self.name = name
        self.report = report


# Per-kind structural rules ------------------------------------------------
def _check_container(unit: UnitFile, report: ValidationReport) -> None:
    if not unit.has_section("Container"):
        report.error("missing-section", "missing required [Container] section", unit.file_name)
        return
    if unit.image is None:
        report.error(
            "missing-image",
            "missing required Image= directive in [Container]",
            unit.file_name,
        )
    for directive in DEPRECATED_CONTAINER_DIRECTIVES:
        if unit.values("Container", directive):
            report.warning(
                "deprecated-directive",
                f"{directive}= in [Container] is deprecated; use Exec= instead",
                unit.file_name,
            )
    has_label = any(unit.values("Container", key) for key in SECURITY_LABEL_DIRECTIVES)
    if unit.values("Container", "Volume") and not has_label:
        report.warning(
            "missing-security-label",
            "mounts volumes without a SecurityLabel*= directive; default SELinux labels apply",
            unit.file_name,
        )


def _check_pod(unit: UnitFile, report: ValidationReport) -> None:
    if not unit.has_section("Pod"):
        report.error("missing-section", "missing required [Pod] section", unit.file_name)
        return
    if unit.first("Pod", "PodName") is None:
        report.warning(
            "missing-pod-name",
            "no PodName= directive; the generator will name the pod systemd-" + unit.stem,
            unit.file_name,
        )


def _section_rule(section: str) -> Callable[[UnitFile, ValidationReport], None]:
    def _check(unit: UnitFile, report: ValidationReport) -> None:
        if not unit.has_section(section):
            report.error("missing-section", f"missing required [{section}] section", unit.file_name)

    return _check


def _check_kube(unit: UnitFile, report: ValidationReport) -> None:
    if unit.first("Kube", "Yaml") is None:
        report.error(
            "missing-manifest",
            "missing required Yaml= manifest reference in [Kube]",
            unit.file_name,
        )


def _check_image(unit: UnitFile, report: ValidationReport) -> None:
    if unit.first("Image", "Image") is None:
        report.error(
            "missing-image",
            "missing required Image= directive in [Image]",
            unit.file_name,
        )


STRUCTURAL_RULES: dict[UnitKind, Callable[[UnitFile, ValidationReport], None]] = {
    UnitKind.CONTAINER: _check_container,
    UnitKind.POD: _check_pod,
    UnitKind.NETWORK: _section_rule("Network"),
    UnitKind.VOLUME: _section_rule("Volume"),
    UnitKind.KUBE: _check_kube,
    UnitKind.IMAGE: _check_image,
}


# Dependency graph --------------------------------------------------------
def find_cycles(edges: Iterable[tuple[str, str]]) -> list[list[str]]:
    """Return every distinct cycle in the directed graph *edges*.

    Each cycle is a path that starts and ends at the same node, rotated so the
    smallest node name comes first.
    """
    graph: dict[str, list[str]] = {}
    for source, target in edges:
        graph.setdefault(source, [])
        if target not in graph[source]:
            graph[source].append(target)
        graph.setdefault(target, [])

    visited: set[str] = set()
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    def visit(node: str) -> None:
        visited.add(node)
        on_stack.add(node)
        stack.append(node)
        for neighbour in graph[node]:
            if neighbour in on_stack:
                loop = stack[stack.index(neighbour) :]
                pivot = loop.index(min(loop))
                rotated = tuple(loop[pivot:] + loop[:pivot])
                if rotated not in seen:
                    seen.add(rotated)
                    cycles.append([*rotated, rotated[0]])
            elif neighbour not in visited:
                visit(neighbour)
        stack.pop()
        on_stack.discard(node)

    for node in sorted(graph):
        if node not in visited:
            visit(node)
    return cycles


def _ordering_edges(edges: Iterable[DependencyEdge]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for edge in edges:
        if edge.relation == "After":
            pairs.append((edge.source_unit, edge.target_unit))
        elif edge.relation == "Before":
            pairs.append((edge.target_unit, edge.source_unit))
    return pairs


def _requirement_edges(edges: Iterable[DependencyEdge]) -> list[tuple[str, str]]:
    return [
        (edge.source_unit, edge.target_unit)
        for edge in edges
        if edge.relation in REQUIREMENT_RELATIONS
    ]


class Validator:
    """Validate unit-set directories, optionally probing the live system."""

    def __init__(
        self,
        port_scanner: PortScanner | None = None,
        volume_store: VolumeStore | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Store the optional collaborators and progress callback."""
        self.port_scanner = port_scanner
        self.volume_store = volume_store
        self.progress = progress

    def validate(self, unit_set_path: Path, check_conflicts: bool = True) -> ValidationReport:
        """Validate every file below *unit_set_path* and return the report."""
        report = ValidationReport()
        root = Path(unit_set_path)
        if not root.is_dir():
            report.error("missing-directory", f"{root} is not a directory")
            return report

        unit_paths, passthrough = discover_unit_files(root)
        for path in passthrough:
            relative = path.relative_to(root).as_posix()
            report.passthrough.append(relative)
            LOGGER.info("Passing through non-quadlet file %s", relative)
            self._emit(f"{relative}: passed through")

        if not unit_paths:
            report.error("no-units", f"no quadlet unit files found in {root}")
            return report

        units: list[UnitFile] = []
        for path in unit_paths:
            relative = path.relative_to(root).as_posix()
            report.units.append(relative)
            before = (len(report.errors), len(report.warnings))
            try:
                unit = parse_unit_file(path, root=root)
            except (OSError, UnicodeDecodeError, UnitParseError) as exc:
                report.error("unreadable", f"cannot read file: {exc}", relative)
            else:
                units.append(unit)
                self._check_unit(unit, report)
            self._emit(self._progress_line(relative, report, before))

        names = volume_name_map(units)
        for unit in units:
            if unit.kind in (UnitKind.CONTAINER, UnitKind.POD):
                for ref in unit.volume_refs(names):
                    if ref not in report.volumes:
                        report.volumes.append(ref)

        self._check_dependencies(units, report)
        if check_conflicts:
            self._check_port_conflicts(units, report)
            self._check_volume_conflicts(report)
        return report

    # Helpers -----------------------------------------------------------
    def _emit(self, line: str) -> None:
        if self.progress is not None:
            self.progress(line)

    @staticmethod
    def _progress_line(name: str, report: ValidationReport, before: tuple[int, int]) -> str:
        errors = len(report.errors) - before[0]
        warnings = len(report.warnings) - before[1]
        if not errors and not warnings:
            return f"{name}: ok"
        return f"{name}: {errors} error(s), {warnings} warning(s)"

    def _check_unit(self, unit: UnitFile, report: ValidationReport) -> None:
        for lineno, text in unit.malformed:
            report.warning(
                "malformed-line", f"line {lineno}: cannot parse {text!r}", unit.file_name
            )
        STRUCTURAL_RULES[unit.kind](unit, report)
        report.dependencies.extend(unit.dependencies())
        try:
            report.ports.extend(unit.port_bindings())
        except UnitParseError as exc:
            report.warning("malformed-port", str(exc), unit.file_name)

    def _check_dependencies(self, units: list[UnitFile], report: ValidationReport) -> None:
        present = {Path(unit.file_name).name for unit in units}
        for unit in units:
            unit_section = unit.sections.get("Unit", {})
            for relation in sorted(HARD_RELATIONS):
                for value in unit_section.get(relation, []):
                    for target in value.split():
                        if UnitKind.from_path(target) is not None and target not in present:
                            report.warning(
                                "missing-dependency",
                                f"{relation}={target} but {target} is not part of this unit-set",
                                unit.file_name,
                            )

        for label, pairs in (
            ("ordering", _ordering_edges(report.dependencies)),
            ("requirement", _requirement_edges(report.dependencies)),
        ):
            for cycle in find_cycles(pairs):
                report.error(
                    "dependency-cycle",
                    f"circular {label} dependency: {' → '.join(cycle)}",
                )

    def _check_port_conflicts(self, units: list[UnitFile], report: ValidationReport) -> None:
        owners: dict[tuple[int, str], list[str]] = {}
        for unit in units:
            try:
                bindings = unit.port_bindings()
            except UnitParseError:
                continue
            for binding in bindings:
                owners.setdefault((binding.host_port, binding.protocol), []).append(unit.file_name)
        for (port, protocol), files in sorted(owners.items()):
            if len(files) > 1:
                report.warning(
                    "duplicate-port",
                    f"host port {port}/{protocol} is published by {', '.join(files)}",
                )

        if self.port_scanner is None or not owners:
            return
        try:
            listening = self.port_scanner.listening_ports()
        except (RuntimeError, OSError) as exc:
            report.warning("check-failed", f"could not list listening ports: {exc}")
            return
        reported: set[int] = set()
        for (port, _protocol), files in sorted(owners.items()):
            if port in listening and port not in reported:
                reported.add(port)
                report.warning(
                    "port-in-use",
                    f"host port {port} (any protocol) is already in use on this system",
                    files[0],
                )

    def _check_volume_conflicts(self, report: ValidationReport) -> None:
        if self.volume_store is None or not report.volumes:
            return
        try:
            existing = self.volume_store.list_volumes()
        except (RuntimeError, OSError) as exc:
            report.warning("check-failed", f"could not list volumes: {exc}")
            return
        for ref in report.volumes:
            if ref.volume_name in existing:
                report.warning(
                    "volume-exists",
                    f"volume '{ref.volume_name}' already exists and will be reused",
                )


def summarize(report: ValidationReport) -> Mapping[str, int]:
    """Return issue and inventory counts for display."""
    return {
        "units": len(report.units),
        "errors": len(report.errors),
        "warnings": len(report.warnings),
        "dependencies": len(report.dependencies),
        "ports": len(report.ports),
        "volumes": len(report.volumes),
    }


__all__ = [
    "STRUCTURAL_RULES",
    "Severity",
    "ValidationError",
    "ValidationIssue",
    "ValidationReport",
    "Validator",
    "find_cycles",
    "summarize",
]
