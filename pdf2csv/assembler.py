"""Build output rows from classifier decisions, failures and fallbacks.

Shared by the live extractor and batch reconciliation so both paths emit
identical rows for identical decisions.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Optional, Sequence

from .models import (
    ChunkDecision,
    ExtractionRow,
    KeepDecision,
    ParagraphCandidate,
    QualitySettings,
    VisionPageDecision,
    VisionParagraph,
)
from .quality import is_acceptable
from .utils import normalize_spaces

log = logging.getLogger(__name__)

OCR_LIMIT_PATTERN = re.compile(
    r"(low[- ]resolution|higher[- ]resolution|too small|unable to reliably|"
    r"cannot reliably|can't reliably|not reliable|insufficient detail)",
    re.IGNORECASE,
)

EMPTY_DOCUMENT_NOTE = (
    "No extractable paragraphs were found by text-layer parsing or vision OCR extraction."
)


def _notes(note: Optional[str], possible_boilerplate: bool) -> str:
    parts: list[str] = []
    if note:
        parts.append(note)
    if possible_boilerplate:
        parts.append("possible boilerplate")
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Decisions -> rows
# ---------------------------------------------------------------------------


def rows_from_text_decision(
    pdf_name: str,
    chunk: Sequence[ParagraphCandidate],
    decision: ChunkDecision,
    quality: QualitySettings,
) -> tuple[list[ExtractionRow], int]:
    """Resolve kept ids against *chunk*; returns ``(rows, dropped_by_quality)``.

    Unknown ids and repeated ids are ignored. Text always comes from the
    candidate, never from the model.
    """
    by_id = {candidate.id: candidate for candidate in chunk}
    used: set[str] = set()
    rows: list[ExtractionRow] = []
    dropped = 0

    for keep in decision.keep:
        candidate = by_id.get(keep.id)
        if candidate is None or keep.id in used:
            continue
        if not is_acceptable(candidate.text, quality):
            dropped += 1
            continue
        used.add(keep.id)
        rows.append(_row_from_keep(pdf_name, candidate, keep))
    return rows, dropped


def _row_from_keep(
    pdf_name: str,
    candidate: ParagraphCandidate,
    keep: KeepDecision,
) -> ExtractionRow:
    return ExtractionRow(
        pdf_name=pdf_name,
        paragraph=candidate.text,
        page_number=candidate.page_number,
        section_heading=keep.section_heading or "",
        notes=_notes(keep.note, keep.possible_boilerplate),
        confidence=keep.confidence,
    )


def rows_from_vision_decision(
    pdf_name: str,
    page_number: int,
    decision: VisionPageDecision,
    quality: QualitySettings,
) -> tuple[list[ExtractionRow], int]:
    rows: list[ExtractionRow] = []
    dropped = 0
    for paragraph in decision.paragraphs:
        if not is_acceptable(paragraph.text, quality):
            dropped += 1
            continue
        rows.append(_row_from_vision(pdf_name, page_number, paragraph))
    return rows, dropped


def _row_from_vision(pdf_name: str, page_number: int, paragraph: VisionParagraph) -> ExtractionRow:
    return ExtractionRow(
        pdf_name=pdf_name,
        paragraph=paragraph.text,
        page_number=page_number,
        section_heading=paragraph.section_heading or "",
        notes=_notes(paragraph.note, paragraph.possible_boilerplate),
        confidence=paragraph.confidence,
    )


# ---------------------------------------------------------------------------
# Failure rows
# ---------------------------------------------------------------------------


def fallback_rows_from_chunk(
    pdf_name: str,
    chunk: Sequence[ParagraphCandidate],
    message: str,
) -> list[ExtractionRow]:
    """Keep every candidate of a failed chunk, flagged in ``notes``."""
    return [
        ExtractionRow(
            pdf_name=pdf_name,
            paragraph=candidate.text,
            page_number=candidate.page_number,
            notes=(
                "LLM filtering failed for this chunk; included paragraph as fallback. "
                f"Error: {message}"
            ),
        )
        for candidate in chunk
    ]


def vision_failure_row(pdf_name: str, page_number: int, message: str) -> ExtractionRow:
    return ExtractionRow(
        pdf_name=pdf_name,
        paragraph="",
        page_number=page_number,
        notes=f"Vision extraction failed on page {page_number}: {message}",
    )


def empty_document_row(pdf_name: str) -> ExtractionRow:
    return ExtractionRow(pdf_name=pdf_name, paragraph="", notes=EMPTY_DOCUMENT_NOTE)


def file_failure_row(pdf_name: str, message: str) -> ExtractionRow:
    return ExtractionRow(
        pdf_name=pdf_name,
        paragraph="",
        paragraph_index=1,
        notes=f"File processing failed: {message}",
    )


# ---------------------------------------------------------------------------
# Per-document finishing
# ---------------------------------------------------------------------------


def dedupe_rows(rows: Sequence[ExtractionRow]) -> list[ExtractionRow]:
    """Drop repeated paragraph text and number the survivors ``1..n``.

    Rows with empty text are failure or placeholder rows and always kept.
    """
    seen: set[str] = set()
    kept: list[ExtractionRow] = []
    for row in rows:
        key = normalize_spaces(row.paragraph)
        if key:
            if key in seen:
                continue
            seen.add(key)
        kept.append(row)
    return [replace(row, paragraph_index=index) for index, row in enumerate(kept, start=1)]


def finish_document(
    pdf_name: str,
    rows: Sequence[ExtractionRow],
    *,
    dropped_by_quality: int = 0,
    vision: bool = False,
) -> list[ExtractionRow]:
    """Apply the placeholder rule for vision documents, then deduplicate."""
    rows = list(rows)
    if vision and not rows:
        rows.append(empty_document_row(pdf_name))
    if dropped_by_quality:
        log.info(
            "%s: dropped %s short/non-sentence fragments during quality filtering.",
            pdf_name,
            dropped_by_quality,
        )
    deduped = dedupe_rows(rows)
    removed = len(rows) - len(deduped)
    if removed:
        log.info("%s: removed %s exact duplicate paragraphs within this PDF.", pdf_name, removed)
    return deduped


def log_vision_warnings(
    pdf_name: str,
    page_number: int,
    decision: VisionPageDecision,
    pattern: re.Pattern = OCR_LIMIT_PATTERN,
) -> None:
    """Surface model warnings, demoting OCR-limit complaints on partial success."""
    has_paragraphs = bool(decision.paragraphs)
    for warning in decision.warnings:
        if has_paragraphs and pattern.search(warning):
            log.info(
                "%s page %s: model reported partial OCR limits but still returned "
                "extractable paragraphs.",
                pdf_name,
                page_number,
            )
            continue
        log.warning("%s page %s: %s", pdf_name, page_number, warning)
    if not has_paragraphs:
        log.warning("%s page %s: vision model returned no main-body paragraphs.", pdf_name, page_number)
