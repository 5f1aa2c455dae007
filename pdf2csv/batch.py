"""Asynchronous batch mode: build the request file, track the job, reconcile results.

The manifest written at build time is the only link between ``custom_id``
values and their documents, chunks and pages; it must be saved before the
batch is submitted.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from . import conversion
from .assembler import (
    OCR_LIMIT_PATTERN,
    fallback_rows_from_chunk,
    finish_document,
    log_vision_warnings,
    rows_from_text_decision,
    rows_from_vision_decision,
    vision_failure_row,
)
from .backend import batch_metadata, build_chat_completion_body, parse_openai_content
from .chunking import chunk_paragraphs
from .decisions import parse_text_decision, parse_vision_decision
from .errors import BatchLimitError, BatchStateError, ConfigurationError
from .extractor import ExtractionOptions, ProgressReporter
from .models import (
    BatchManifest,
    BatchResultLine,
    BatchTask,
    ExtractionRow,
    FilePlan,
    TextFilterTask,
    VisionPageTask,
)
from .prompts import build_text_filter_messages, build_vision_messages
from .quality import sanitize_quality_settings
from .runtime import map_with_concurrency, raise_if_cancelled
from .utils import (
    BATCH_ENDPOINT,
    MAX_BATCH_BYTES,
    MAX_BATCH_REQUESTS,
    TERMINAL_BATCH_STATUSES,
    format_bytes,
    load_batch_job,
    save_batch_job,
)

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_openai(backend: Any) -> None:
    if getattr(backend, "kind", None) != "openai":
        raise ConfigurationError("Batch mode requires an OpenAI-compatible backend.")


def create_custom_id(file_index: int, kind: str, task_index: int) -> str:
    return f"f{file_index}-{kind}-{task_index}"


def build_request_line(custom_id: str, model: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "custom_id": custom_id,
        "method": "POST",
        "url": BATCH_ENDPOINT,
        "body": build_chat_completion_body(model, messages, json_mode=True),
    }


# ---------------------------------------------------------------------------
# Build phase
# ---------------------------------------------------------------------------


@dataclass
class PreparedFile:
    plan: FilePlan
    tasks: list[BatchTask] = field(default_factory=list)
    requests: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PreparedBatch:
    manifest: BatchManifest
    input_bytes: bytes
    request_count: int
    request_bytes: int


def prepare_single_pdf_for_batch(
    pdf_path: Path,
    file_index: int,
    options: ExtractionOptions,
    progress: Optional[ProgressReporter] = None,
) -> PreparedFile:
    """Segment one PDF and emit its tasks: one per chunk, or one per page in vision mode."""
    quality = sanitize_quality_settings(options.quality)
    model = options.backend.model
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
        log.info("%s: queuing vision OCR requests for rendered page images.", pdf_name)
        prepared = PreparedFile(
            plan=FilePlan(pdf_name, file_index, "vision", parsed.total_pages)
        )
        for task_index, page in enumerate(
            conversion.iter_page_images(pdf_path, cancel=options.cancel)
        ):
            raise_if_cancelled(options.cancel)
            on_page(page.page_number, page.total_pages)
            custom_id = create_custom_id(file_index, VisionPageTask.kind, task_index)
            prepared.tasks.append(
                VisionPageTask(
                    custom_id=custom_id,
                    pdf_name=pdf_name,
                    file_index=file_index,
                    task_index=task_index,
                    page_number=page.page_number,
                    total_pages=page.total_pages,
                )
            )
            prepared.requests.append(
                build_request_line(
                    custom_id,
                    model,
                    build_vision_messages(
                        options.vision_prompt,
                        quality,
                        pdf_name,
                        page.page_number,
                        page.image_data_url,
                    ),
                )
            )
        return prepared

    chunks = chunk_paragraphs(parsed.paragraphs)
    prepared = PreparedFile(plan=FilePlan(pdf_name, file_index, "text", parsed.total_pages))
    for chunk_index, chunk in enumerate(chunks):
        custom_id = create_custom_id(file_index, TextFilterTask.kind, chunk_index)
        prepared.tasks.append(
            TextFilterTask(
                custom_id=custom_id,
                pdf_name=pdf_name,
                file_index=file_index,
                task_index=chunk_index,
                chunk_index=chunk_index,
                total_chunks=len(chunks),
                chunk=tuple(chunk),
            )
        )
        prepared.requests.append(
            build_request_line(
                custom_id,
                model,
                build_text_filter_messages(options.text_filter_prompt, quality, chunk),
            )
        )
    return prepared


def encode_request_lines(requests: Sequence[dict[str, Any]]) -> bytes:
    text = "\n".join(json.dumps(line, ensure_ascii=False) for line in requests)
    return f"{text}\n".encode("utf-8")


def check_batch_limits(
    request_count: int,
    request_bytes: int,
    *,
    max_requests: int = MAX_BATCH_REQUESTS,
    max_bytes: int = MAX_BATCH_BYTES,
) -> None:
    if request_count == 0:
        raise BatchLimitError("No batch requests were generated from the selected PDFs.")
    if request_bytes > max_bytes:
        raise BatchLimitError(
            f"Batch input file is too large ({format_bytes(request_bytes)}). "
            "Reduce the PDF set or disable vision-heavy batches."
        )
    if request_count > max_requests:
        raise BatchLimitError(
            f"Batch contains {request_count} requests, exceeding the supported limit "
            f"of {max_requests}. Reduce the PDF set."
        )


def prepare_batch(paths: Sequence[Path], options: ExtractionOptions) -> PreparedBatch:
    """Build the manifest and request file for *paths*; nothing is uploaded."""
    _require_openai(options.backend)

    paths = [Path(p) for p in paths]
    progress = ProgressReporter(options, len(paths))
    quality = sanitize_quality_settings(options.quality)
    t0 = time.time()

    def worker(pdf_path: Path, file_index: int) -> PreparedFile:
        try:
            log.info("Preparing batch requests for %s", pdf_path.name)
            prepared = prepare_single_pdf_for_batch(pdf_path, file_index, options, progress)
            log.info(
                "Prepared %s with %s batch request(s).",
                pdf_path.name,
                len(prepared.requests),
            )
            return prepared
        finally:
            progress.completed.increment()
            progress.report(pdf_path.name)

    prepared_files = map_with_concurrency(paths, options.file_concurrency, worker, options.cancel)

    manifest = BatchManifest(
        model=options.backend.model,
        quality=quality,
        files=[prepared.plan for prepared in prepared_files],
        tasks=[task for prepared in prepared_files for task in prepared.tasks],
        created_at=_now(),
    )
    requests = [line for prepared in prepared_files for line in prepared.requests]
    input_bytes = encode_request_lines(requests) if requests else b""
    check_batch_limits(len(requests), len(input_bytes))

    log.info(
        "prepare_batch: %s request(s), %s, %s file(s) in %.2fs",
        len(requests),
        format_bytes(len(input_bytes)),
        len(paths),
        time.time() - t0,
    )
    return PreparedBatch(
        manifest=manifest,
        input_bytes=input_bytes,
        request_count=len(requests),
        request_bytes=len(input_bytes),
    )


# ---------------------------------------------------------------------------
# Reconciliation phase
# ---------------------------------------------------------------------------


def parse_result_lines(text: Optional[str]) -> dict[str, BatchResultLine]:
    """Index a newline-delimited result stream by ``custom_id``.

    Blank lines are ignored. Undecodable lines and lines without a
    ``custom_id`` are skipped with a warning. A repeated id keeps its last line.
    """
    results: dict[str, BatchResultLine] = {}
    for number, raw in enumerate((text or "").splitlines(), start=1):
        raw = raw.strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            log.warning("Skipping undecodable batch result line %s: %s", number, exc)
            continue
        if not isinstance(data, dict):
            log.warning("Skipping batch result line %s: not a JSON object", number)
            continue
        custom_id = data.get("custom_id")
        if not isinstance(custom_id, str) or not custom_id:
            log.warning("Skipping batch result line %s: missing custom_id", number)
            continue
        results[custom_id] = BatchResultLine.from_dict(data)
    return results


def is_usable(line: Optional[BatchResultLine]) -> bool:
    return (
        line is not None
        and line.body is not None
        and line.status_code is not None
        and 200 <= line.status_code < 300
    )


def format_batch_error(line: Optional[BatchResultLine]) -> str:
    if line is None:
        return "No batch result was returned for this request."
    if line.error_message and line.error_message.strip():
        return line.error_message.strip()
    if line.status_code is not None and not 200 <= line.status_code < 300:
        body = line.body if isinstance(line.body, dict) else {}
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = error.get("message") if isinstance(error.get("message"), str) else ""
        if message:
            return f"HTTP {line.status_code}: {message}"
        return f"HTTP {line.status_code} returned by batch result."
    return "Batch request did not return a usable response."


def import_batch_results(
    manifest: BatchManifest,
    output_text: Optional[str],
    error_text: Optional[str],
    *,
    ocr_limit_pattern: re.Pattern = OCR_LIMIT_PATTERN,
) -> list[ExtractionRow]:
    """Turn result streams back into rows, in manifest file order.

    Every task contributes either decided rows or failure rows; nothing
    raises for a bad or missing result.
    """
    outputs = parse_result_lines(output_text)
    errors = parse_result_lines(error_text)
    quality = sanitize_quality_settings(manifest.quality)

    rows_by_file: dict[int, list[ExtractionRow]] = {}
    dropped_by_file: dict[int, int] = {}

    for task in manifest.tasks:
        line = outputs.get(task.custom_id) or errors.get(task.custom_id)
        bucket = rows_by_file.setdefault(task.file_index, [])
        try:
            if not is_usable(line):
                raise ValueError(format_batch_error(line))
            content = parse_openai_content(line.body)

            if isinstance(task, TextFilterTask):
                decision = parse_text_decision(content)
                rows, dropped = rows_from_text_decision(task.pdf_name, task.chunk, decision, quality)
                if decision.warnings:
                    log.warning(
                        "%s chunk %s/%s: %s",
                        task.pdf_name,
                        task.chunk_index + 1,
                        task.total_chunks,
                        " | ".join(decision.warnings),
                    )
            else:
                decision = parse_vision_decision(content)
                log_vision_warnings(task.pdf_name, task.page_number, decision, ocr_limit_pattern)
                rows, dropped = rows_from_vision_decision(
                    task.pdf_name, task.page_number, decision, quality
                )
        except Exception as exc:
            if isinstance(task, TextFilterTask):
                log.error(
                    "%s chunk %s/%s: LLM batch request failed. %s",
                    task.pdf_name,
                    task.chunk_index + 1,
                    task.total_chunks,
                    exc,
                )
                bucket.extend(fallback_rows_from_chunk(task.pdf_name, task.chunk, str(exc)))
            else:
                log.error(
                    "%s page %s: vision batch request failed. %s",
                    task.pdf_name,
                    task.page_number,
                    exc,
                )
                bucket.append(vision_failure_row(task.pdf_name, task.page_number, str(exc)))
            continue

        bucket.extend(rows)
        dropped_by_file[task.file_index] = dropped_by_file.get(task.file_index, 0) + dropped

    final_rows: list[ExtractionRow] = []
    for plan in sorted(manifest.files, key=lambda p: p.file_index):
        final_rows.extend(
            finish_document(
                plan.pdf_name,
                rows_by_file.get(plan.file_index, []),
                dropped_by_quality=dropped_by_file.get(plan.file_index, 0),
                vision=plan.mode == "vision",
            )
        )
    log.info(
        "import_batch_results: %s task(s) -> %s row(s) across %s file(s)",
        len(manifest.tasks),
        len(final_rows),
        len(manifest.files),
    )
    return final_rows


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------


@dataclass
class BatchJob:
    """Persisted state of one submitted batch."""

    manifest: BatchManifest
    base_url: str = ""
    status: str = "prepared"
    batch_id: str = ""
    input_file_id: str = ""
    output_file_id: Optional[str] = None
    error_file_id: Optional[str] = None
    request_counts: Optional[dict[str, int]] = None
    request_count: int = 0
    request_bytes: int = 0
    created_at: str = ""
    last_checked_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "base_url": self.base_url,
            "status": self.status,
            "input_file_id": self.input_file_id,
            "output_file_id": self.output_file_id,
            "error_file_id": self.error_file_id,
            "request_counts": self.request_counts,
            "manifest": self.manifest.to_dict(),
            "request_count": self.request_count,
            "request_bytes": self.request_bytes,
            "created_at": self.created_at,
            "last_checked_at": self.last_checked_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchJob":
        return cls(
            manifest=BatchManifest.from_dict(data["manifest"]),
            base_url=str(data.get("base_url") or ""),
            status=str(data.get("status") or "prepared"),
            batch_id=str(data.get("batch_id") or ""),
            input_file_id=str(data.get("input_file_id") or ""),
            output_file_id=data.get("output_file_id") or None,
            error_file_id=data.get("error_file_id") or None,
            request_counts=data.get("request_counts") or None,
            request_count=int(data.get("request_count") or 0),
            request_bytes=int(data.get("request_bytes") or 0),
            created_at=str(data.get("created_at") or ""),
            last_checked_at=str(data.get("last_checked_at") or ""),
        )


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_BATCH_STATUSES


def merge_batch_update(job: BatchJob, batch: dict[str, Any]) -> BatchJob:
    """Fold a remote batch object into *job* and stamp the check time."""
    job.batch_id = str(batch.get("id") or job.batch_id)
    job.status = str(batch.get("status") or job.status)
    job.output_file_id = batch.get("output_file_id") or job.output_file_id
    job.error_file_id = batch.get("error_file_id") or job.error_file_id
    counts = batch.get("request_counts")
    if isinstance(counts, dict):
        job.request_counts = {key: int(value) for key, value in counts.items() if value is not None}
    job.last_checked_at = _now()
    return job


def save_job(path: Path, job: BatchJob) -> Path:
    return save_batch_job(path, job.to_dict())


def load_job(path: Path) -> Optional[BatchJob]:
    """Restore a job record, or ``None`` when the file is missing or unusable."""
    data = load_batch_job(path)
    if data is None:
        return None
    try:
        return BatchJob.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("Ignoring unusable batch job file %s: %s", path, exc)
        return None


def submit_batch(backend: Any, prepared: PreparedBatch, job_path: Path) -> BatchJob:
    """Persist the job as ``prepared``, upload the request file and create the batch."""
    _require_openai(backend)
    job = BatchJob(
        manifest=prepared.manifest,
        base_url=backend.config.resolved_base_url,
        request_count=prepared.request_count,
        request_bytes=prepared.request_bytes,
        created_at=_now(),
    )
    save_job(job_path, job)
    log.info("Saved batch manifest to %s before upload", job_path)

    uploaded = backend.upload_batch_input(
        prepared.input_bytes, f"pdf2csv-batch-{int(time.time())}.jsonl"
    )
    job.input_file_id = str(uploaded["id"])
    job.status = "uploaded"
    save_job(job_path, job)

    batch = backend.create_batch(job.input_file_id, batch_metadata(backend.model))
    merge_batch_update(job, batch)
    save_job(job_path, job)
    log.info(
        "Submitted batch %s (%s request(s), %s), status=%s",
        job.batch_id,
        job.request_count,
        format_bytes(job.request_bytes),
        job.status,
    )
    return job


def _require_batch_id(job: BatchJob) -> None:
    if not job.batch_id:
        raise BatchStateError("Batch job has not been submitted yet.")


def refresh_batch(backend: Any, job: BatchJob, job_path: Path) -> BatchJob:
    _require_openai(backend)
    _require_batch_id(job)
    merge_batch_update(job, backend.retrieve_batch(job.batch_id))
    save_job(job_path, job)
    log.info("Batch %s status=%s counts=%s", job.batch_id, job.status, job.request_counts)
    return job


def cancel_batch(backend: Any, job: BatchJob, job_path: Path) -> BatchJob:
    _require_openai(backend)
    _require_batch_id(job)
    merge_batch_update(job, backend.cancel_batch(job.batch_id))
    save_job(job_path, job)
    log.info("Cancellation requested for batch %s, status=%s", job.batch_id, job.status)
    return job


def import_batch(backend: Any, job: BatchJob) -> list[ExtractionRow]:
    """Download the result streams of *job* and reconcile them into rows."""
    _require_openai(backend)
    if not job.is_terminal and not job.output_file_id:
        raise BatchStateError(
            f"Batch {job.batch_id or '(unsubmitted)'} is still {job.status}; "
            "no output file is available yet."
        )
    if not job.output_file_id and not job.error_file_id:
        raise BatchStateError(
            f"Batch {job.batch_id} finished as {job.status} without output or error files."
        )

    output_text = backend.download_file_text(job.output_file_id) if job.output_file_id else None
    error_text = backend.download_file_text(job.error_file_id) if job.error_file_id else None
    return import_batch_results(job.manifest, output_text, error_text)
