"""Shared fixtures for the quadctl test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from fakes import FakeFetcher, FakePortScanner, FakeServiceController, FakeVolumeStore

from quadctl.config import AppConfig, load_config

ConfigFactory = Callable[..., AppConfig]


@pytest.fixture
def make_config(tmp_path: Path) -> ConfigFactory:
    """Return a factory writing a config file rooted in ``tmp_path``."""

    def factory(unit_sets: list[dict[str, object]] | None = None, **extra: object) -> AppConfig:
        payload: dict[str, object] = {
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "lock_timeout": 1.0,
            "install": {
                "user_dir": str(tmp_path / "live" / "user"),
                "system_dir": str(tmp_path / "live" / "system"),
            },
            "unit_sets": unit_sets or [],
        }
        payload.update(extra)
        config_path = tmp_path / "config.yml"
        config_path.write_text(yaml.safe_dump(payload), encoding="utf-8")
        return load_config(config_path, env={})

    return factory


@pytest.fixture
def fetcher() -> FakeFetcher:
    """Return an empty fake fetcher."""
    return FakeFetcher()


@pytest.fixture
def services() -> FakeServiceController:
    """Return a recording service controller."""
    return FakeServiceController()


@pytest.fixture
def volumes() -> FakeVolumeStore:
    """Return an empty volume store."""
    return FakeVolumeStore()


@pytest.fixture
def scanner() -> FakePortScanner:
    """Return a port scanner with nothing listening."""
    return FakePortScanner()
