"""Reconstruct lines and paragraphs from positioned text runs.

Runs are expected in PDF user space (y grows upward), so reading order is
descending y, then ascending x. Paragraph breaks adapt to each page's own
line spacing: a gap wider than ``paragraph_gap_factor`` times the median
line gap starts a new paragraph.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass
from typing import Iterable

from .models import TextRun
from .utils import normalize_spaces

LINE_TOLERANCE = 2.2
DEFAULT_LINE_GAP = 12.0
PARAGRAPH_GAP_FACTOR = 1.65
MIN_SAMPLED_GAP = 0.5
MAX_SAMPLED_GAP = 40.0

_LOWER_START_RE = re.compile(r"^[a-z]")
_OPEN_END_RE = re.compile(r"[(\[{/]$")
_CLOSE_START_RE = re.compile(r"^[,.;:!?%)\]}]")


@dataclass(frozen=True)
class Line:
    y: float
    text: str


def append_token(line: str, token: str) -> str:
    """Join *token* onto *line*, undoing hyphenation and tight punctuation."""
    if not line:
        return token
    if line.endswith("-") and _LOWER_START_RE.match(token):
        return line[:-1] + token
    if _OPEN_END_RE.search(line) or _CLOSE_START_RE.match(token):
        return line + token
    return f"{line} {token}"


def append_line(paragraph: str, line: str) -> str:
    if not paragraph:
        return line
    if paragraph.endswith("-") and _LOWER_START_RE.match(line):
        return paragraph[:-1] + line
    return f"{paragraph} {line}"


def group_runs_into_lines(
    runs: Iterable[TextRun],
    tolerance: float = LINE_TOLERANCE,
) -> list[Line]:
    """Cluster runs whose y values lie within *tolerance* into lines."""
    ordered = sorted(runs, key=lambda run: (-run.y, run.x))

    groups: list[tuple[float, list[tuple[float, str]]]] = []
    for run in ordered:
        text = normalize_spaces(run.text or "")
        if not text:
            continue
        if not groups or abs(groups[-1][0] - run.y) > tolerance:
            groups.append((run.y, [(run.x, text)]))
            continue
        groups[-1][1].append((run.x, text))

    lines: list[Line] = []
    for y, tokens in groups:
        joined = ""
        for _x, token in sorted(tokens, key=lambda item: item[0]):
            joined = append_token(joined, token)
        joined = normalize_spaces(joined)
        if joined:
            lines.append(Line(y=y, text=joined))
    return lines


def median_line_gap(lines: list[Line], default: float = DEFAULT_LINE_GAP) -> float:
    gaps = [
        prev.y - line.y
        for prev, line in zip(lines, lines[1:])
        if MIN_SAMPLED_GAP < prev.y - line.y < MAX_SAMPLED_GAP
    ]
    if not gaps:
        return default
    return float(statistics.median(gaps))


def lines_to_paragraphs(
    lines: list[Line],
    gap_factor: float = PARAGRAPH_GAP_FACTOR,
    default_gap: float = DEFAULT_LINE_GAP,
) -> list[str]:
    if not lines:
        return []

    threshold = median_line_gap(lines, default_gap) * gap_factor
    paragraphs: list[str] = []
    current = ""

    for i, line in enumerate(lines):
        if not current:
            current = line.text
            continue
        if lines[i - 1].y - line.y > threshold:
            normalized = normalize_spaces(current)
            if normalized:
                paragraphs.append(normalized)
            current = line.text
            continue
        current = append_line(current, line.text)

    normalized = normalize_spaces(current)
    if normalized:
        paragraphs.append(normalized)
    return paragraphs


def has_text_layer(runs: Iterable[TextRun]) -> bool:
    return any(normalize_spaces(run.text or "") for run in runs)


def segment_page(runs: list[TextRun], tolerance: float = LINE_TOLERANCE) -> list[str]:
    """Turn one page of runs into ordered paragraph strings."""
    return lines_to_paragraphs(group_runs_into_lines(runs, tolerance))
