"""Live extraction: parse, classify and assemble rows for a set of PDFs."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from . import conversion
from .assembler import (
    OCR_LIMIT_PATTERN,
    fallback_rows_from_chunk,
    file_failure_row,
    finish_document,
    log_vision_warnings,
    rows_from_text_decision,
    rows_from_vision_decision,
    vision_failure_row,
)
from .backend import ChatBackend
from .chunking import chunk_paragraphs
from .decisions import parse_text_decision, parse_vision_decision
from .errors import Cancelled
from .filters import DEFAULT_FILTER_POLICY, FilterPolicy
from .models import (
    ChunkDecision,
    ExtractionRow,
    ParagraphCandidate,
    PromptConfig,
    QualitySettings,
    RunProgress,
    VisionPageDecision,
)
from .prompts import (
    DEFAULT_PROMPT_CONFIG,
    TEXT_FILTER_TOOL,
    VISION_PAGE_TOOL,
    build_text_filter_messages,
    build_vision_messages,
)
from .quality import sanitize_quality_settings
from .runtime import (
    DEFAULT_BASE_DELAY_S,
    DEFAULT_RETRIES,
    CancellationToken,
    ProgressCounter,
    map_with_concurrency,
    raise_if_cancelled,
    with_retries,
)

log = logging.getLogger(__name__)


@dataclass
class ExtractionOptions:
    """Everything one live run needs besides the input paths."""

    backend: ChatBackend
    prompts: PromptConfig = DEFAULT_PROMPT_CONFIG
    quality: QualitySettings = field(default_factory=QualitySettings)
    file_concurrency: int = 2
    retries: int = DEFAULT_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY_S
    cancel: Optional[CancellationToken] = None
    on_progress: Optional[Callable[[RunProgress], None]] = None
    filter_policy: FilterPolicy = DEFAULT_FILTER_POLICY
    ocr_limit_pattern: re.Pattern = OCR_LIMIT_PATTERN

    @property
    def text_filter_prompt(self) -> str:
        return self.prompts.text_filter_system.strip() or DEFAULT_PROMPT_CONFIG.text_filter_system

    @property
    def vision_prompt(self) -> str:
        return self.prompts.vision_system.strip() or DEFAULT_PROMPT_CONFIG.vision_system


class ProgressReporter:
    """Adapts the run-wide completion counter to ``RunProgress`` callbacks."""

    def __init__(self, options: ExtractionOptions, total_pdfs: int) -> None:
        self.options = options
        self.total_pdfs = total_pdfs
        self.completed = ProgressCounter()

    def report(self, pdf_name: str, page: int = 0, total_pages: int = 0) -> None:
        if self.options.on_progress is None:
            return
        self.options.on_progress(
            RunProgress(
                total_pdfs=self.total_pdfs,
                completed_pdfs=self.completed.value,
                current_pdf=pdf_name,
                current_page=page,
                total_pages_for_current=total_pages,
            )
        )


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


def classify_chunk(
    options: ExtractionOptions,
    quality: QualitySettings,
    chunk: Sequence[ParagraphCandidate],
) -> ChunkDecision:
    raw = options.backend.complete(
        build_text_filter_messages(options.text_filter_prompt, quality, chunk),
        json_mode=True,
        tool=TEXT_FILTER_TOOL,
        cancel=options.cancel,
    )
    return parse_text_decision(raw)


def extract_page_with_vision(
    options: ExtractionOptions,
    quality: QualitySettings,
    pdf_name: str,
    page_number: int,
    image_data_url: str,
) -> VisionPageDecision:
    raw = options.backend.complete(
        build_vision_messages(options.vision_prompt, quality, pdf_name, page_number, image_data_url),
        json_mode=True,
        tool=VISION_PAGE_TOOL,
        cancel=options.cancel,
    )
    return parse_vision_decision(raw)


def _retry(options: ExtractionOptions, operation):
    return with_retries(
        operation,
        retries=options.retries,
        base_delay=options.base_delay,
        cancel=options.cancel,
    )


# ---------------------------------------------------------------------------
# Per-document processing
# ---------------------------------------------------------------------------


def process_with_vision_fallback(
    pdf_path: Path,
    options: ExtractionOptions,
    progress: Optional[ProgressReporter] = None,
) -> list[ExtractionRow]:
    """Send every rendered page to the vision model; one page failing never stops the rest."""
    quality = sanitize_quality_settings(options.quality)
    pdf_name = pdf_path.name
    rows: list[ExtractionRow] = []
    dropped = 0

    for page in conversion.iter_page_images(pdf_path, cancel=options.cancel):
        raise_if_cancelled(options.cancel)
        if progress is not None:
            progress.report(pdf_name, page.page_number, page.total_pages)
        try:
            decision = _retry(
                options,
                lambda: extract_page_with_vision(
                    options, quality, pdf_name, page.page_number, page.image_data_url
                ),
            )
        except Cancelled:
            raise
        except Exception as exc:
            log.error(
                "%s page %s: vision extraction failed after retries. %s",
                pdf_name,
                page.page_number,
                exc,
            )
            rows.append(vision_failure_row(pdf_name, page.page_number, str(exc)))
            continue

        log_vision_warnings(pdf_name, page.page_number, decision, options.ocr_limit_pattern)
        page_rows, page_dropped = rows_from_vision_decision(
            pdf_name, page.page_number, decision, quality
        )
        rows.extend(page_rows)
        dropped += page_dropped

    return finish_document(pdf_name, rows, dropped_by_quality=dropped, vision=True)


def process_document(
    pdf_path: Path,
    options: ExtractionOptions,
    progress: Optional[ProgressReporter] = None,
) -> list[ExtractionRow]:
    """Text-layer path for one PDF, switching to vision when no candidates survive."""
    quality = sanitize_quality_settings(options.quality)
    pdf_name = pdf_path.name

    def on_page(page: int, total_pages: int) -> None:
        if progress is not None:
            progress.report(pdf_name, page, total_pages)

    parsed = conversion.extract_pdf_candidates(
        pdf_path,
        name=pdf_name,
        policy=options.filter_policy,
        on_page_progress=on_page,
        cancel=options.cancel,
    )
    for warning in parsed.warnings:
        log.warning("%s: %s", pdf_name, warning)

    if not parsed.paragraphs:
        log.warning("%s: no paragraph candidates remained after text-layer parsing.", pdf_name)
        log.info(
            "%s: attempting vision OCR fallback on rendered page images "
            "(requires a vision-capable model).",
            pdf_name,
        )
        return process_with_vision_fallback(pdf_path, options, progress)

    chunks = chunk_paragraphs(parsed.paragraphs)
    rows: list[ExtractionRow] = []
    dropped = 0

    for chunk_index, chunk in enumerate(chunks, start=1):
        raise_if_cancelled(options.cancel)
        label = f"chunk {chunk_index}/{len(chunks)}"
        try:
            decision = _retry(options, lambda: classify_chunk(options, quality, chunk))
        except Cancelled:
            raise
        except Exception as exc:
            log.error("%s %s: LLM filtering failed after retries. %s", pdf_name, label, exc)
            rows.extend(fallback_rows_from_chunk(pdf_name, chunk, str(exc)))
            continue

        chunk_rows, chunk_dropped = rows_from_text_decision(pdf_name, chunk, decision, quality)
        rows.extend(chunk_rows)
        dropped += chunk_dropped
        if decision.warnings:
            log.warning("%s %s: %s", pdf_name, label, " | ".join(decision.warnings))

    return finish_document(pdf_name, rows, dropped_by_quality=dropped)


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


def run_extraction(paths: Sequence[Path], options: ExtractionOptions) -> list[ExtractionRow]:
    """Process *paths* with bounded file concurrency; rows keep input file order.

    A document that fails outright contributes a single failure row.
    Cancellation aborts the whole run.
    """
    paths = [Path(p) for p in paths]
    progress = ProgressReporter(options, len(paths))
    t0 = time.time()
    log.info(
        "run_extraction: %s PDF(s), model=%s, concurrency=%s",
        len(paths),
        options.backend.model,
        options.file_concurrency,
    )

    def worker(pdf_path: Path, _index: int) -> list[ExtractionRow]:
        try:
            log.info("Starting extraction for %s", pdf_path.name)
            rows = process_document(pdf_path, options, progress)
            log.info("Finished %s with %s paragraphs.", pdf_path.name, len(rows))
            return rows
        except Cancelled:
            raise
        except Exception as exc:
            log.error("%s: failed to process file. %s", pdf_path.name, exc)
            return [file_failure_row(pdf_path.name, str(exc))]
        finally:
            progress.completed.increment()
            progress.report(pdf_path.name)

    per_file = map_with_concurrency(paths, options.file_concurrency, worker, options.cancel)
    rows = [row for file_rows in per_file for row in file_rows]
    log.info("run_extraction: %s row(s) in %.2fs", len(rows), time.time() - t0)
    return rows
