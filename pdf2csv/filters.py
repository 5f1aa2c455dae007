"""Rule-based rejection of boilerplate and repeated template text."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .models import ParagraphCandidate, ParsedDocument, TextRun
from .segmenter import LINE_TOLERANCE, has_text_layer, segment_page
from .utils import normalize_spaces

log = logging.getLogger(__name__)

BOILERPLATE_RE = re.compile(
    r"\b(cookie|privacy|accept all|manage preferences|subscribe|newsletter|"
    r"all rights reserved|terms of use|contact us|follow us|advertisement|"
    r"sponsored|promo code|sign in|log in)\b",
    re.IGNORECASE,
)
_PAGE_NUMBER_RES = (
    re.compile(r"^\d{1,4}$"),
    re.compile(r"^page\s+\d{1,4}$", re.IGNORECASE),
    re.compile(r"^\d{1,4}\s*/\s*\d{1,4}$"),
)
_ALPHA_RE = re.compile(r"[A-Za-z]")
_TERMINAL_RE = re.compile(r"[.!?]$")


@dataclass(frozen=True)
class FilterPolicy:
    """Thresholds for the pre-classification filters."""

    min_chars: int = 4
    short_text_chars: int = 50
    min_alpha_ratio: float = 0.35
    repeat_min_pages: int = 3
    repeat_max_chars: int = 220
    repeat_min_key_chars: int = 8


DEFAULT_FILTER_POLICY = FilterPolicy()


def is_likely_page_number(text: str) -> bool:
    return any(pattern.match(text) for pattern in _PAGE_NUMBER_RES)


def is_likely_boilerplate(text: str, policy: FilterPolicy = DEFAULT_FILTER_POLICY) -> bool:
    compact = normalize_spaces(text)
    if not compact:
        return True
    if BOILERPLATE_RE.search(compact):
        return True
    if is_likely_page_number(compact):
        return True
    if len(compact) < policy.min_chars:
        return True
    alpha = len(_ALPHA_RE.findall(compact))
    if len(compact) < policy.short_text_chars and alpha / len(compact) < policy.min_alpha_ratio:
        return True
    return False


def remove_global_repeats(
    candidates: Sequence[ParagraphCandidate],
    policy: FilterPolicy = DEFAULT_FILTER_POLICY,
) -> tuple[list[ParagraphCandidate], list[str]]:
    """Drop short unterminated paragraphs that recur on many pages.

    Returns ``(kept, warnings)``.
    """
    pages_by_key: dict[str, set[int]] = defaultdict(set)
    for candidate in candidates:
        key = normalize_spaces(candidate.text)
        if len(key) < policy.repeat_min_key_chars:
            continue
        pages_by_key[key].add(candidate.page_number)

    kept: list[ParagraphCandidate] = []
    removed = 0
    for candidate in candidates:
        key = normalize_spaces(candidate.text)
        pages = pages_by_key.get(key)
        if (
            pages is not None
            and len(pages) >= policy.repeat_min_pages
            and len(key) < policy.repeat_max_chars
            and not _TERMINAL_RE.search(key)
        ):
            removed += 1
            continue
        kept.append(candidate)

    warnings: list[str] = []
    if removed:
        warnings.append(
            f"Removed {removed} repeated short paragraphs likely to be "
            "template/header/footer text."
        )
    return kept, warnings


def build_parsed_document(
    name: str,
    pages: Sequence[Sequence[TextRun]],
    policy: FilterPolicy = DEFAULT_FILTER_POLICY,
    *,
    line_tolerance: float = LINE_TOLERANCE,
    on_page: Optional[Callable[[int, int], None]] = None,
) -> ParsedDocument:
    """Segment and filter every page of one document.

    ``pages`` holds the runs of each page in page order; a page with no
    usable runs counts as lacking a text layer and contributes nothing.
    Never raises on empty input.
    """
    total_pages = len(pages)
    candidates: list[ParagraphCandidate] = []
    warnings: list[str] = []
    without_text = 0

    for page_number, runs in enumerate(pages, start=1):
        if not has_text_layer(runs):
            without_text += 1
            if on_page is not None:
                on_page(page_number, total_pages)
            continue

        removed = 0
        for ordinal, paragraph in enumerate(segment_page(list(runs), line_tolerance), start=1):
            if is_likely_boilerplate(paragraph, policy):
                removed += 1
                continue
            candidates.append(
                ParagraphCandidate(
                    id=f"p{page_number}-{ordinal}",
                    page_number=page_number,
                    text=paragraph,
                )
            )
        if removed:
            warnings.append(
                f"Page {page_number}: removed {removed} likely boilerplate "
                "candidates before LLM filtering."
            )
        if on_page is not None:
            on_page(page_number, total_pages)

    kept, repeat_warnings = remove_global_repeats(candidates, policy)
    warnings.extend(repeat_warnings)
    if without_text:
        warnings.append(
            f"Detected {without_text}/{total_pages} page(s) without an "
            "extractable text layer."
        )

    log.debug(
        "%s: pages=%s candidates=%s kept=%s no_text_layer=%s",
        name,
        total_pages,
        len(candidates),
        len(kept),
        without_text,
    )
    return ParsedDocument(
        name=name,
        paragraphs=kept,
        total_pages=total_pages,
        pages_without_text_layer=without_text,
        warnings=warnings,
    )
