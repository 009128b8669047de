"""Provider interfaces for quadctl."""
from __future__ import annotations

from .base import Differ, PortScanner, ServiceController, SourceFetcher, VolumeStore
from .differ import DifflibDiffer
from .git import FetchError, GitSourceFetcher
from .podman import PodmanVolumeStore, VolumeStoreError
from .ports import PortScanError, SocketPortScanner
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "Differ",
    "DifflibDiffer",
    "FetchError",
    "GitSourceFetcher",
    "PodmanVolumeStore",
    "PortScanError",
    "PortScanner",
    "ServiceController",
    "SocketPortScanner",
    "SourceFetcher",
    "SystemdError",
    "SystemdProvider",
    "VolumeStore",
    "VolumeStoreError",
]
