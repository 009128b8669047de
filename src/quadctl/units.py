"""Parser for quadlet unit files.

Quadlets are systemd-style INI files (``[Section]`` headers and ``Key=Value``
directives) whose extension selects the unit kind. Repeated keys accumulate,
so every directive maps to a list of values.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEPENDENCY_RELATIONS: tuple[str, ...] = (
    "Requires",
    "Requisite",
    "Wants",
    "BindsTo",
    "PartOf",
    "After",
    "Before",
)
HARD_RELATIONS = frozenset({"Requires", "Requisite", "BindsTo"})
PROTOCOLS = frozenset({"tcp", "udp"})
IGNORED_DIRECTORIES = frozenset({".git"})


class UnitParseError(ValueError):
    """Raised when a directive value cannot be interpreted."""


class UnitKind(str, Enum):
    """Closed set of quadlet unit kinds, keyed by file extension."""

    CONTAINER = "container"
    POD = "pod"
    NETWORK = "network"
    VOLUME = "volume"
    KUBE = "kube"
    IMAGE = "image"

    @classmethod
    def from_path(cls, path: str | Path) -> UnitKind | None:
        """Return the kind for *path*'s extension, or ``None`` when unrecognised."""
        suffix = Path(path).suffix.lstrip(".")
        try:
            return cls(suffix)
        except ValueError:
            return None

    @property
    def suffix(self) -> str:
        """Return the file extension, including the leading dot."""
        return f".{self.value}"

    @property
    def section(self) -> str:
        """Return the name of the kind's main section (``Container`` etc.)."""
        return self.value.capitalize()

    def service_name(self, stem: str) -> str:
        """Return the systemd service generated for a unit file named *stem*."""
        return f"{stem}{_SERVICE_SUFFIXES[self]}"


_SERVICE_SUFFIXES: dict[UnitKind, str] = {
    UnitKind.CONTAINER: ".service",
    UnitKind.POD: "-pod.service",
    UnitKind.NETWORK: "-network.service",
    UnitKind.VOLUME: "-volume.service",
    UnitKind.KUBE: ".service",
    UnitKind.IMAGE: "-image.service",
}


@dataclass(frozen=True)
class DependencyEdge:
    """A ``[Unit]`` relation from one service to another."""

    source_unit: str
    relation: str
    target_unit: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "source_unit": self.source_unit,
            "relation": self.relation,
            "target_unit": self.target_unit,
        }


@dataclass(frozen=True)
class PortBinding:
    """A host port published by a ``PublishPort=`` directive."""

    host_port: int
    container_port: int
    protocol: str = "tcp"
    host_ip: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host_port": self.host_port,
            "container_port": self.container_port,
            "protocol": self.protocol,
            "host_ip": self.host_ip,
        }


@dataclass(frozen=True)
class VolumeRef:
    """A named volume mounted by a ``Volume=`` directive."""

    volume_name: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"volume_name": self.volume_name}


@dataclass(slots=True)
class UnitFile:
    """Structured view of a single quadlet file."""

    file_name: str
    kind: UnitKind
    sections: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    malformed: list[tuple[int, str]] = field(default_factory=list)

    @property
    def stem(self) -> str:
        """Return the file name without directory or extension."""
        return Path(self.file_name).stem

    @property
    def service_name(self) -> str:
        """Return the systemd service the quadlet generator creates for this file."""
        return self.kind.service_name(self.stem)

    @property
    def directives(self) -> dict[str, list[str]]:
        """Return every directive across all sections, in file order."""
        merged: dict[str, list[str]] = {}
        for entries in self.sections.values():
            for key, values in entries.items():
                merged.setdefault(key, []).extend(values)
        return merged

    def has_section(self, name: str) -> bool:
        """Return ``True`` when the file declares section *name*."""
        return name in self.sections

    def values(self, section: str, key: str) -> list[str]:
        """Return every value of *key* in *section* (empty when absent)."""
        return list(self.sections.get(section, {}).get(key, []))

    def first(self, section: str, key: str) -> str | None:
        """Return the first non-empty value of *key* in *section*."""
        for value in self.values(section, key):
            if value:
                return value
        return None

    @property
    def image(self) -> str | None:
        """Return the image reference of a container or image unit."""
        return self.first(self.kind.section, "Image")

    def dependencies(self) -> list[DependencyEdge]:
        """Return the dependency edges declared in ``[Unit]``."""
        edges: list[DependencyEdge] = []
        unit_section = self.sections.get("Unit", {})
        for relation in DEPENDENCY_RELATIONS:
            for value in unit_section.get(relation, []):
                for target in value.split():
                    edges.append(
                        DependencyEdge(
                            source_unit=self.service_name,
                            relation=relation,
                            target_unit=normalize_unit_reference(target),
                        )
                    )
        return edges

    def port_bindings(self) -> list[PortBinding]:
        """Return host port bindings from ``PublishPort=``.

        Raises :class:`UnitParseError` when a value cannot be parsed.
        """
        bindings: list[PortBinding] = []
        for value in self.values(self.kind.section, "PublishPort"):
            bindings.extend(parse_publish_port(value))
        return bindings

    def volume_refs(self, volume_names: Mapping[str, str] | None = None) -> list[VolumeRef]:
        """Return named volumes mounted via ``Volume=``.

        *volume_names* maps sibling ``.volume`` file names to the engine volume
        they create; unmapped ``.volume`` references fall back to the generator
        default ``systemd-<stem>``.
        """
        refs: list[VolumeRef] = []
        seen: set[str] = set()
        for value in self.values(self.kind.section, "Volume"):
            name = volume_source(value)
            if name is None:
                continue
            if name.endswith(UnitKind.VOLUME.suffix):
                lookup = volume_names or {}
                name = lookup.get(name, f"systemd-{Path(name).stem}")
            if name not in seen:
                seen.add(name)
                refs.append(VolumeRef(name))
        return refs

    def volume_name(self) -> str | None:
        """For ``.volume`` units, return the engine volume name they create."""
        if self.kind is not UnitKind.VOLUME:
            return None
        return self.first("Volume", "VolumeName") or f"systemd-{self.stem}"


def parse_unit_text(text: str, file_name: str) -> UnitFile:
    """Parse quadlet *text* for a file called *file_name*."""
    kind = UnitKind.from_path(file_name)
    if kind is None:
        raise UnitParseError(f"{file_name}: not a recognised quadlet file type.")

    unit = UnitFile(file_name=file_name, kind=kind)
    current: dict[str, list[str]] | None = None
    pending = ""
    pending_line = 0

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if pending:
            line = f"{pending} {line}".strip()
            lineno = pending_line
            pending = ""
        if line.endswith("\\"):
            pending = line[:-1].rstrip()
            pending_line = lineno
            continue
        if not line or line.startswith(("#", ";")):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            current = unit.sections.setdefault(section, {})
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or current is None:
            unit.malformed.append((lineno, raw.strip()))
            continue
        current.setdefault(key, []).append(value.strip())

    if pending:
        unit.malformed.append((pending_line, pending))
    return unit


def parse_unit_file(path: Path, *, root: Path | None = None) -> UnitFile:
    """Read and parse the quadlet at *path*.

    When *root* is given the unit's ``file_name`` is relative to it.
    """
    text = path.read_text(encoding="utf-8")
    file_name = path.relative_to(root).as_posix() if root is not None else path.name
    return parse_unit_text(text, file_name)


def discover_unit_files(directory: Path) -> tuple[list[Path], list[Path]]:
    """Return ``(quadlet_files, passthrough_files)`` below *directory*.

    Both lists are sorted; anything inside ``.git`` is ignored.
    """
    units: list[Path] = []
    passthrough: list[Path] = []
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if any(part in IGNORED_DIRECTORIES for part in relative.parts):
            continue
        if not path.is_file():
            continue
        if UnitKind.from_path(path) is None:
            passthrough.append(path)
        else:
            units.append(path)
    return units, passthrough


def normalize_unit_reference(target: str) -> str:
    """Map quadlet file references (``db.container``) to their service names."""
    kind = UnitKind.from_path(target)
    if kind is None:
        return target
    return kind.service_name(Path(target).stem)


def volume_source(value: str) -> str | None:
    """Return the named volume in a ``Volume=`` value, or ``None`` for bind mounts."""
    source = value.strip().split(":", 1)[0].strip()
    if not source:
        return None
    if source.startswith(("/", ".", "~", "%")):
        return None
    return source


def parse_publish_port(value: str) -> list[PortBinding]:
    """Parse one ``PublishPort=`` value into host port bindings.

    Container-only publishes (``80``) and random host ports (``::80``) bind
    no fixed host port and return an empty list.
    """
    spec = value.strip()
    protocol = "tcp"
    if "/" in spec:
        spec, protocol = spec.rsplit("/", 1)
        protocol = protocol.strip().lower()
        if protocol not in PROTOCOLS:
            raise UnitParseError(f"Unsupported protocol in PublishPort={value!r}.")

    host_ip: str | None = None
    if spec.startswith("["):
        closing = spec.find("]")
        if closing == -1 or spec[closing + 1 : closing + 2] != ":":
            raise UnitParseError(f"Malformed IPv6 address in PublishPort={value!r}.")
        host_ip = spec[1:closing]
        parts = spec[closing + 2 :].split(":")
        if len(parts) == 1:
            parts = ["", parts[0]]
    else:
        parts = spec.split(":")
        if len(parts) == 3:
            host_ip = parts[0] or None
            parts = parts[1:]

    if len(parts) == 1:
        _parse_port_range(parts[0], value)
        return []
    if len(parts) != 2:
        raise UnitParseError(f"Malformed PublishPort={value!r}.")

    host_spec, container_spec = parts
    container_ports = _parse_port_range(container_spec, value)
    if not host_spec.strip():
        return []
    host_ports = _parse_port_range(host_spec, value)
    if len(container_ports) == 1 and len(host_ports) > 1:
        container_ports = container_ports * len(host_ports)
    if len(host_ports) != len(container_ports):
        raise UnitParseError(f"Host and container port ranges differ in PublishPort={value!r}.")
    return [
        PortBinding(host_port=host, container_port=container, protocol=protocol, host_ip=host_ip)
        for host, container in zip(host_ports, container_ports, strict=True)
    ]


def _parse_port_range(text: str, original: str) -> list[int]:
    start_text, sep, end_text = text.strip().partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if sep else start
    except ValueError as exc:
        raise UnitParseError(f"Invalid port in PublishPort={original!r}.") from exc
    if not (0 < start <= 65535 and 0 < end <= 65535) or end < start:
        raise UnitParseError(f"Port out of range in PublishPort={original!r}.")
    return list(range(start, end + 1))


def volume_name_map(units: Iterable[UnitFile]) -> dict[str, str]:
    """Return ``{"x.volume": engine_volume_name}`` for the ``.volume`` files in *units*."""
    mapping: dict[str, str] = {}
    for unit in units:
        name = unit.volume_name()
        if name is not None:
            mapping[Path(unit.file_name).name] = name
    return mapping


def unit_set_services(directory: Path) -> list[str]:
    """Return the services to start for the unit-set installed at *directory*.

    Containers, pods and kube units contribute their generated service; a
    ``.timer`` companion replaces the service it activates.
    """
    unit_paths, passthrough = discover_unit_files(directory)
    timers = {path.stem: path.name for path in passthrough if path.suffix == ".timer"}
    services: list[str] = []
    for path in unit_paths:
        kind = UnitKind.from_path(path)
        if kind not in (UnitKind.CONTAINER, UnitKind.POD, UnitKind.KUBE):
            continue
        service = kind.service_name(path.stem)
        if Path(service).stem not in timers:
            services.append(service)
    services.extend(timers.values())
    return sorted(set(services))


__all__ = [
    "DEPENDENCY_RELATIONS",
    "HARD_RELATIONS",
    "DependencyEdge",
    "PortBinding",
    "UnitFile",
    "UnitKind",
    "UnitParseError",
    "VolumeRef",
    "discover_unit_files",
    "normalize_unit_reference",
    "parse_publish_port",
    "parse_unit_file",
    "parse_unit_text",
    "unit_set_services",
    "volume_name_map",
    "volume_source",
]
