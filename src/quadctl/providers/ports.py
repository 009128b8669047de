"""Listening-port scanner backed by ``ss``."""
from __future__ import annotations

from dataclasses import dataclass

from .process import run_command


class PortScanError(RuntimeError):
    """Raised when listening sockets cannot be enumerated."""


@dataclass(slots=True)
class SocketPortScanner:
    """Return host ports with a listening TCP or UDP socket."""

    ss_bin: str = "ss"

    def listening_ports(self) -> set[int]:
        """Run ``ss -Hlntu`` and collect the local port of each socket."""
        result = run_command(
            [self.ss_bin, "-Hlntu"],
            error_cls=PortScanError,
            error_prefix=f"{self.ss_bin} -Hlntu",
        )
        return parse_ss_output(result.stdout)


def parse_ss_output(output: str) -> set[int]:
    """Extract local port numbers from headerless ``ss -lntu`` output.

    Lines look like ``tcp LISTEN 0 4096 127.0.0.1:8080 0.0.0.0:*``; the local
    address is the fifth column and may be ``[::]:80`` or ``*:53``.
    """
    ports: set[int] = set()
    for line in output.splitlines():
        columns = line.split()
        if len(columns) < 5:
            continue
        local = columns[4]
        _, sep, port_text = local.rpartition(":")
        if not sep or not port_text.isdigit():
            continue
        ports.add(int(port_text))
    return ports


__all__ = ["PortScanError", "SocketPortScanner", "parse_ss_output"]
