"""Per-item outcomes for operations that run over several unit-sets."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .config import ConfigError

ALL = "all"


class ItemStatus(str, Enum):
    """Outcome of one unit-set within a batch."""

    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class ItemResult:
    """Result of processing a single unit-set."""

    name: str
    status: ItemStatus = ItemStatus.OK
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    detail: dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the item failed."""
        return self.status is not ItemStatus.FAILED

    def fail(self, message: str, *, errors: list[str] | None = None) -> ItemResult:
        """Mark the item failed with *message*."""
        self.status = ItemStatus.FAILED
        self.message = message
        self.errors.extend(errors or [message])
        return self

    def skip(self, message: str) -> ItemResult:
        """Mark the item skipped with *message*."""
        self.status = ItemStatus.SKIPPED
        self.message = message
        return self

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "detail": dict(self.detail),
        }


@dataclass(slots=True)
class BatchResult:
    """Ordered item results of a batch operation."""

    operation: str
    items: list[ItemResult] = field(default_factory=list)

    def add(self, item: ItemResult) -> ItemResult:
        """Append *item* and return it."""
        self.items.append(item)
        return item

    @property
    def ok(self) -> bool:
        """Return ``True`` when no item failed."""
        return all(item.ok for item in self.items)

    @property
    def failed(self) -> list[ItemResult]:
        """Return the failed items."""
        return [item for item in self.items if item.status is ItemStatus.FAILED]

    @property
    def succeeded(self) -> list[ItemResult]:
        """Return the items processed successfully."""
        return [item for item in self.items if item.status is ItemStatus.OK]

    @property
    def skipped(self) -> list[ItemResult]:
        """Return the items that were skipped."""
        return [item for item in self.items if item.status is ItemStatus.SKIPPED]

    @property
    def warnings(self) -> list[str]:
        """Return every warning, prefixed with its unit-set name."""
        return [f"{item.name}: {warning}" for item in self.items for warning in item.warnings]

    @property
    def lock_wait_ms(self) -> int:
        """Return the total time items spent waiting for their unit-set locks."""
        waits = (item.detail.get("lock_wait_ms") for item in self.items)
        return sum(wait for wait in waits if isinstance(wait, int))

    @property
    def backup_ids(self) -> list[str]:
        """Return ``<name>:<backup_id>`` for every snapshot the batch created."""
        return [
            f"{item.name}:{item.detail['backup_id']}"
            for item in self.items
            if item.detail.get("backup_id")
        ]

    def get(self, name: str) -> ItemResult | None:
        """Return the result for *name*, if present."""
        for item in self.items:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "operation": self.operation,
            "ok": self.ok,
            "items": [item.to_dict() for item in self.items],
        }


def select_names(
    requested: str | Sequence[str],
    *,
    everything: Iterable[str],
    known: Iterable[str],
) -> list[str]:
    """Resolve *requested* names (or ``"all"``) against the *known* unit-sets.

    ``"all"`` expands to *everything*. Unknown names raise :class:`ConfigError`
    before any unit-set is touched; duplicates are dropped, order is kept.
    """
    if isinstance(requested, str):
        requested = [requested]
    if any(name == ALL for name in requested):
        if len(requested) > 1:
            raise ConfigError("\"all\" cannot be combined with explicit unit-set names.")
        return list(dict.fromkeys(everything))
    if not requested:
        raise ConfigError("No unit-set names given; pass one or more names or \"all\".")
    known_set = set(known)
    unknown = [name for name in requested if name not in known_set]
    if unknown:
        raise ConfigError(f"Unknown unit-set(s): {', '.join(unknown)}.")
    return list(dict.fromkeys(requested))


__all__ = ["ALL", "BatchResult", "ItemResult", "ItemStatus", "select_names"]
