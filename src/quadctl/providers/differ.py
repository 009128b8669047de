"""Unified diff generation."""
from __future__ import annotations

import difflib
from dataclasses import dataclass


@dataclass(slots=True)
class DifflibDiffer:
    """Produce unified diffs with :mod:`difflib`."""

    context_lines: int = 3

    def unified(self, old_text: str, new_text: str, old_label: str, new_label: str) -> str:
        """Return the unified diff of two texts (empty when identical)."""
        lines = difflib.unified_diff(
            old_text.splitlines(keepends=True),
            new_text.splitlines(keepends=True),
            fromfile=old_label,
            tofile=new_label,
            n=self.context_lines,
        )
        rendered: list[str] = []
        for line in lines:
            rendered.append(line if line.endswith("\n") else f"{line}\n")
        return "".join(rendered)


__all__ = ["DifflibDiffer"]
