"""Configuration loader for quadctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/quadctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``QUADCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export QUADCTL_INSTALL__USER_DIR=$HOME/.config/containers/systemd
    export QUADCTL_LOCK_TIMEOUT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

Unit-sets (named groups of quadlet files deployed together) are declared under
``unit_sets``::

    unit_sets:
      - name: ai-stack
        source: https://github.com/example/quadlets.git
        branch: main
        subpath: ai-stack
        scope: user
      - name: base
        managed_externally: true
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load quadctl configuration. Install with "
        "`pip install quadctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "QUADCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_SCOPES = {"user", "system"}
UNIT_SET_KEYS = {
    "name",
    "source",
    "scope",
    "branch",
    "managed_externally",
    "setup_delay",
    "subpath",
}
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class UnitSetConfig:
    """Operator configuration for a single deployable unit-set."""

    name: str
    source: str | None = None
    scope: str = "user"
    branch: str = "main"
    managed_externally: bool = False
    setup_delay: float = 0.0
    subpath: str | None = None

    @property
    def is_fetchable(self) -> bool:
        """Return ``True`` when the unit-set has a remote or local source."""
        return bool(self.source and self.source.strip())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "source": self.source,
            "scope": self.scope,
            "branch": self.branch,
            "managed_externally": self.managed_externally,
            "setup_delay": self.setup_delay,
            "subpath": self.subpath,
        }


@dataclass(frozen=True)
class InstallConfig:
    """Live install roots for user and system scoped unit-sets."""

    user_dir: Path = Path("~/.config/containers/systemd").expanduser()
    system_dir: Path = Path("/etc/containers/systemd")

    def root_for(self, scope: str) -> Path:
        """Return the install root for *scope*."""
        return self.system_dir if scope == "system" else self.user_dir

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"user_dir": str(self.user_dir), "system_dir": str(self.system_dir)}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class PodmanConfig:
    """Container engine configuration values."""

    podman_bin: str = "podman"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"podman_bin": self.podman_bin}


@dataclass(frozen=True)
class PortsConfig:
    """Port scanner configuration values."""

    ss_bin: str = "ss"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ss_bin": self.ss_bin}


@dataclass(frozen=True)
class GitConfig:
    """Source fetcher configuration values."""

    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"git_bin": self.git_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for quadctl."""

    config_file: Path
    state_dir: Path
    staging_dir: Path
    backups_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    install: InstallConfig
    systemd: SystemdConfig
    podman: PodmanConfig
    ports: PortsConfig
    git: GitConfig
    unit_sets: tuple[UnitSetConfig, ...] = ()

    def unit_set(self, name: str) -> UnitSetConfig | None:
        """Return the configured unit-set called *name*, if any."""
        for unit_set in self.unit_sets:
            if unit_set.name == name:
                return unit_set
        return None

    def unit_set_names(self) -> list[str]:
        """Return the configured unit-set names in declaration order."""
        return [unit_set.name for unit_set in self.unit_sets]

    def install_dir(self, unit_set: UnitSetConfig) -> Path:
        """Return the live install directory for *unit_set*."""
        return self.install.root_for(unit_set.scope) / unit_set.name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "staging_dir": str(self.staging_dir),
            "backups_dir": str(self.backups_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "install": self.install.to_dict(),
            "systemd": self.systemd.to_dict(),
            "podman": self.podman.to_dict(),
            "ports": self.ports.to_dict(),
            "git": self.git.to_dict(),
            "unit_sets": [unit_set.to_dict() for unit_set in self.unit_sets],
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/quadctl/config.yml",
    "state_dir": "/var/lib/quadctl",
    "staging_dir": None,  # derived from state_dir when absent
    "backups_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/quadctl",
    "runtime_dir": "/run/quadctl",
    "lock_timeout": 30.0,
    "install": {
        "user_dir": "~/.config/containers/systemd",
        "system_dir": "/etc/containers/systemd",
    },
    "systemd": {"systemctl_bin": "systemctl"},
    "podman": {"podman_bin": "podman"},
    "ports": {"ss_bin": "ss"},
    "git": {"git_bin": "git"},
    "unit_sets": [],
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "install": {"user_dir", "system_dir"},
    "systemd": {"systemctl_bin"},
    "podman": {"podman_bin"},
    "ports": {"ss_bin"},
    "git": {"git_bin"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def validate_unit_set_name(name: str) -> str:
    """Return *name* stripped, raising :class:`ConfigError` when unsafe."""
    normalized = name.strip()
    if not normalized or not _NAME_PATTERN.match(normalized):
        raise ConfigError(
            f"Invalid unit-set name {name!r}: use letters, digits, '.', '_' or '-'."
        )
    return normalized


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    unit_sets = raw.get("unit_sets")
    if unit_sets is not None:
        entries = _as_sequence(unit_sets, "unit_sets")
        for index, entry in enumerate(entries):
            mapping = _as_dict(entry, f"unit_sets[{index}]")
            unknown = set(mapping.keys()) - UNIT_SET_KEYS
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown keys for unit_sets[{index}]: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    staging_value = raw.get("staging_dir")
    staging_dir = _to_path(staging_value) if staging_value else state_dir / "staging"
    backups_value = raw.get("backups_dir")
    backups_dir = _to_path(backups_value) if backups_value else state_dir / "backups"

    install_mapping = _as_dict(raw.get("install"), "install")
    install = InstallConfig(
        user_dir=_to_path(install_mapping.get("user_dir", "~/.config/containers/systemd")),
        system_dir=_to_path(install_mapping.get("system_dir", "/etc/containers/systemd")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    podman_mapping = _as_dict(raw.get("podman"), "podman")
    ports_mapping = _as_dict(raw.get("ports"), "ports")
    git_mapping = _as_dict(raw.get("git"), "git")

    unit_sets = _build_unit_sets(raw.get("unit_sets"))

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        staging_dir=staging_dir,
        backups_dir=backups_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        install=install,
        systemd=SystemdConfig(
            systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        ),
        podman=PodmanConfig(podman_bin=str(podman_mapping.get("podman_bin", "podman"))),
        ports=PortsConfig(ss_bin=str(ports_mapping.get("ss_bin", "ss"))),
        git=GitConfig(git_bin=str(git_mapping.get("git_bin", "git"))),
        unit_sets=unit_sets,
    )


def _build_unit_sets(value: object | None) -> tuple[UnitSetConfig, ...]:
    if value is None:
        return ()
    entries = _as_sequence(value, "unit_sets")
    unit_sets: list[UnitSetConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        label = f"unit_sets[{index}]"
        mapping = _as_dict(entry, label)

        name_value = mapping.get("name")
        if not isinstance(name_value, str):
            raise ConfigError(f"{label}.name must be a non-empty string.")
        name = validate_unit_set_name(name_value)
        if name in seen:
            raise ConfigError(f"Duplicate unit-set name '{name}' in unit_sets.")
        seen.add(name)

        source = _optional_str(mapping.get("source"), f"{label}.source")
        subpath = _optional_str(mapping.get("subpath"), f"{label}.subpath")
        if subpath is not None and (Path(subpath).is_absolute() or ".." in Path(subpath).parts):
            raise ConfigError(f"{label}.subpath must be a relative path inside the source.")

        scope = str(mapping.get("scope", "user")).strip().lower()
        if scope not in ALLOWED_SCOPES:
            allowed = ", ".join(sorted(ALLOWED_SCOPES))
            raise ConfigError(f"Unsupported scope '{scope}' for {label}. Allowed: {allowed}.")

        branch = _optional_str(mapping.get("branch"), f"{label}.branch") or "main"

        managed = mapping.get("managed_externally", False)
        if not isinstance(managed, bool):
            raise ConfigError(f"{label}.managed_externally must be a boolean.")

        setup_delay = _expect_non_negative_float(
            mapping.get("setup_delay"),
            f"{label}.setup_delay",
        )

        unit_sets.append(
            UnitSetConfig(
                name=name,
                source=source,
                scope=scope,
                branch=branch,
                managed_externally=managed,
                setup_delay=setup_delay,
                subpath=subpath,
            )
        )
    return tuple(unit_sets)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"{label} must be a string.")
    text = str(value).strip()
    return text or None


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _parse_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _parse_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str) -> float:
    if value is None:
        return 0.0
    numeric = _parse_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "GitConfig",
    "InstallConfig",
    "PodmanConfig",
    "PortsConfig",
    "SystemdConfig",
    "UnitSetConfig",
    "load_config",
    "validate_unit_set_name",
]
