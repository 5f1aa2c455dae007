"""Local PDF discovery."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

log = logging.getLogger(__name__)


def discover_pdfs(folder: Path) -> list[Path]:
    """Recursively find all PDF files under *folder*, sorted by path."""
    if not folder.exists():
        return []
    return sorted(p for p in folder.rglob("*") if p.is_file() and p.suffix.lower() == ".pdf")


def resolve_inputs(inputs: Iterable[Path]) -> list[Path]:
    """Expand files and folders into an ordered, de-duplicated PDF list.

    Order follows *inputs*; folders contribute their sorted contents.
    """
    inputs = list(inputs)
    resolved: list[Path] = []
    seen: set[Path] = set()
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            candidates = discover_pdfs(path)
        elif path.is_file():
            candidates = [path]
        else:
            log.warning("Input not found, skipping: %s", path)
            continue
        for candidate in candidates:
            key = candidate.resolve()
            if key in seen:
                continue
            seen.add(key)
            resolved.append(candidate)
    log.info("Resolved %s PDF file(s) from %s input(s)", len(resolved), len(inputs))
    return resolved
