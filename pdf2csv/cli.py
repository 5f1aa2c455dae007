"""CLI entrypoint for the PDF -> paragraph CSV/XLSX extraction pipeline.

Usage:
    python -m pdf2csv run ./pdfs --model gpt-4.1-mini --output out/paragraphs.csv
    python -m pdf2csv run a.pdf b.pdf --backend ollama --model llama3.2-vision
    python -m pdf2csv batch submit ./pdfs --model gpt-4.1-mini
    python -m pdf2csv batch status --wait
    python -m pdf2csv batch import --output out/paragraphs.xlsx
    python -m pdf2csv batch cancel
    python -m pdf2csv models --backend ollama
    python -m pdf2csv export-prompts prompts.md
"""

from __future__ import annotations

import argparse
import logging
import signal
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import BatchStateError, Cancelled, ConfigurationError
from .runtime import CancellationToken
from .utils import APP_NAME, JOB_FILE_NAME

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / f"{APP_NAME}.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    for noisy in ("urllib3", "httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _logging_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory for default output, job and log files (default: output/)",
    )
    parent.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parent.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parent.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=f"Optional log file path (default: <output-dir>/{APP_NAME}.log in detailed mode)",
    )
    return parent


def _backend_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    group = parent.add_argument_group("backend")
    group.add_argument(
        "--backend",
        choices=["openai", "ollama"],
        default="openai",
        help="Model endpoint kind (default: openai)",
    )
    group.add_argument("--base-url", default="", help="Endpoint base URL")
    group.add_argument(
        "--api-key",
        default="",
        help="API key for OpenAI-compatible endpoints (default: $OPENAI_API_KEY)",
    )
    group.add_argument("--model", default="", help="Model identifier")
    group.add_argument(
        "--timeout",
        type=float,
        default=180.0,
        help="Per-request timeout in seconds (default: 180)",
    )
    ollama = parent.add_argument_group("ollama")
    ollama.add_argument("--temperature", type=float, default=None)
    ollama.add_argument("--top-p", type=float, default=None)
    ollama.add_argument("--top-k", type=int, default=None)
    ollama.add_argument("--min-p", type=float, default=None)
    ollama.add_argument("--repeat-penalty", type=float, default=None)
    ollama.add_argument("--context-size", type=int, default=None)
    ollama.add_argument(
        "--native-tools",
        action="store_true",
        help="Ask Ollama for native tool calls instead of plain JSON",
    )
    return parent


def _extraction_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("inputs", nargs="+", type=Path, help="PDF files or folders")
    parent.add_argument(
        "--concurrency",
        type=int,
        default=2,
        help="PDFs processed in parallel (default: 2)",
    )
    parent.add_argument(
        "--prompts",
        type=Path,
        default=None,
        help="Prompt markdown with ## text_filter_system and ## vision_page_system",
    )
    quality = parent.add_argument_group("quality")
    quality.add_argument("--min-words", type=int, default=6)
    quality.add_argument("--min-alpha-chars", type=int, default=18)
    quality.add_argument("--short-word-threshold", type=int, default=12)
    quality.add_argument(
        "--no-terminator-rule",
        action="store_true",
        help="Accept short paragraphs without terminal punctuation",
    )
    return parent


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    logging_parent = _logging_parent()
    backend_parent = _backend_parent()
    extraction_parent = _extraction_parent()

    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Extract codable narrative paragraphs from PDFs into CSV/XLSX",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser(
        "run",
        parents=[logging_parent, backend_parent, extraction_parent],
        help="Extract paragraphs with live model calls",
    )
    run.add_argument("--output", type=Path, default=None, help="Output .csv or .xlsx")
    run.add_argument("--retries", type=int, default=2, help="Retries per chunk/page (default: 2)")

    batch = commands.add_parser("batch", help="Asynchronous OpenAI batch jobs")
    batch_commands = batch.add_subparsers(dest="batch_command", required=True)

    job_parent = argparse.ArgumentParser(add_help=False)
    job_parent.add_argument(
        "--job-file",
        type=Path,
        default=None,
        help=f"Batch job record (default: <output-dir>/{JOB_FILE_NAME})",
    )

    batch_commands.add_parser(
        "submit",
        parents=[logging_parent, backend_parent, extraction_parent, job_parent],
        help="Build the request file, save the manifest and submit the batch",
    )
    status = batch_commands.add_parser(
        "status",
        parents=[logging_parent, backend_parent, job_parent],
        help="Refresh the batch status",
    )
    status.add_argument("--wait", action="store_true", help="Poll until the batch finishes")
    status.add_argument(
        "--poll-interval",
        type=float,
        default=30.0,
        help="Seconds between polls with --wait (default: 30)",
    )
    importer = batch_commands.add_parser(
        "import",
        parents=[logging_parent, backend_parent, job_parent],
        help="Download results and write rows",
    )
    importer.add_argument("--output", type=Path, default=None, help="Output .csv or .xlsx")
    batch_commands.add_parser(
        "cancel",
        parents=[logging_parent, backend_parent, job_parent],
        help="Request cancellation of the batch",
    )

    commands.add_parser(
        "models",
        parents=[logging_parent, backend_parent],
        help="List models available on the endpoint",
    )

    export = commands.add_parser(
        "export-prompts",
        parents=[logging_parent],
        help="Write the default prompts as editable markdown",
    )
    export.add_argument("path", type=Path, help="Destination markdown file")

    args = parser.parse_args(argv)
    if getattr(args, "output", "unset") is None:
        args.output = args.output_dir / "paragraphs.csv"
    if getattr(args, "job_file", "unset") is None:
        args.job_file = args.output_dir / JOB_FILE_NAME
    return args


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_backend_config(args: argparse.Namespace):
    from .backend import BackendConfig
    from .quality import sanitize_ollama_settings

    ollama = sanitize_ollama_settings(
        {
            "temperature": args.temperature,
            "top_p": args.top_p,
            "top_k": args.top_k,
            "min_p": args.min_p,
            "repeat_penalty": args.repeat_penalty,
            "context_size": args.context_size,
            "use_native_tool_calling": args.native_tools,
        }
    )
    return BackendConfig(
        kind=args.backend,
        base_url=args.base_url,
        api_key=args.api_key,
        model=args.model,
        timeout_s=args.timeout,
        ollama=ollama,
    )


def build_quality_settings(args: argparse.Namespace):
    from .quality import sanitize_quality_settings

    return sanitize_quality_settings(
        {
            "min_words_per_paragraph": args.min_words,
            "min_alpha_chars_per_paragraph": args.min_alpha_chars,
            "short_paragraph_word_threshold": args.short_word_threshold,
            "require_sentence_terminator_for_short_paragraphs": not args.no_terminator_rule,
        }
    )


class _ProgressBar:
    """tqdm bar driven by ``RunProgress`` callbacks from worker threads."""

    def __init__(self, total: int, desc: str) -> None:
        from tqdm import tqdm

        self.bar = tqdm(total=total, desc=desc, unit="pdf")

    def __call__(self, progress) -> None:
        self.bar.n = progress.completed_pdfs
        if progress.current_page:
            self.bar.set_postfix_str(
                f"{progress.current_pdf} p{progress.current_page}/{progress.total_pages_for_current}",
                refresh=False,
            )
        self.bar.refresh()

    def close(self) -> None:
        self.bar.close()


def _install_sigint(token: CancellationToken) -> Callable[[], None]:
    """Route the first Ctrl-C to *token*; a second one interrupts immediately."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        log.warning("Cancellation requested; finishing in-flight requests (Ctrl-C again to force)")
        token.cancel()

    signal.signal(signal.SIGINT, handler)
    return lambda: signal.signal(signal.SIGINT, previous)


def _extraction_options(args: argparse.Namespace, backend: Any, token: CancellationToken, bar):
    from .extractor import ExtractionOptions
    from .prompts import load_prompt_config

    return ExtractionOptions(
        backend=backend,
        prompts=load_prompt_config(args.prompts),
        quality=build_quality_settings(args),
        file_concurrency=max(1, args.concurrency),
        retries=getattr(args, "retries", 2),
        cancel=token,
        on_progress=bar,
    )


def _load_job_or_fail(job_file: Path):
    from .batch import load_job

    job = load_job(job_file)
    if job is None:
        raise ConfigurationError(f"No usable batch job found at {job_file}")
    return job


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend
    from .exporters import check_output_path, write_rows
    from .extractor import run_extraction
    from .sources import resolve_inputs

    check_output_path(args.output)
    backend = create_backend(build_backend_config(args))
    pdf_files = resolve_inputs(args.inputs)
    if not pdf_files:
        log.warning("No PDFs found. Exiting.")
        return EXIT_OK

    bar = _ProgressBar(len(pdf_files), "Extracting")
    try:
        rows = run_extraction(pdf_files, _extraction_options(args, backend, token, bar))
    finally:
        bar.close()

    write_rows(rows, args.output)
    failures = sum(1 for row in rows if row.notes.startswith("File processing failed"))
    log.info("=" * 60)
    log.info("EXTRACTION COMPLETE")
    log.info("  PDFs:      %s", len(pdf_files))
    log.info("  Rows:      %s", len(rows))
    log.info("  Failed:    %s", failures)
    log.info("  Output:    %s", args.output)
    return EXIT_OK


def _cmd_batch_submit(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend
    from .batch import prepare_batch, submit_batch
    from .sources import resolve_inputs

    backend = create_backend(build_backend_config(args))
    pdf_files = resolve_inputs(args.inputs)
    if not pdf_files:
        log.warning("No PDFs found. Exiting.")
        return EXIT_OK

    bar = _ProgressBar(len(pdf_files), "Preparing")
    try:
        prepared = prepare_batch(pdf_files, _extraction_options(args, backend, token, bar))
    finally:
        bar.close()

    job = submit_batch(backend, prepared, args.job_file)
    log.info("Batch %s submitted; job record at %s", job.batch_id, args.job_file)
    return EXIT_OK


def _cmd_batch_status(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend
    from .batch import refresh_batch

    job = _load_job_or_fail(args.job_file)
    backend = create_backend(build_backend_config(args), require_model=False)
    job = refresh_batch(backend, job, args.job_file)
    while args.wait and not job.is_terminal:
        token.sleep(max(1.0, args.poll_interval))
        job = refresh_batch(backend, job, args.job_file)
    print(f"{job.batch_id}\t{job.status}\t{job.request_counts or {}}")
    return EXIT_OK


def _cmd_batch_import(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend
    from .batch import import_batch, refresh_batch
    from .exporters import check_output_path, write_rows

    check_output_path(args.output)
    job = _load_job_or_fail(args.job_file)
    backend = create_backend(build_backend_config(args), require_model=False)
    if not job.is_terminal:
        job = refresh_batch(backend, job, args.job_file)
    rows = import_batch(backend, job)
    write_rows(rows, args.output)
    log.info("Imported %s row(s) from batch %s into %s", len(rows), job.batch_id, args.output)
    return EXIT_OK


def _cmd_batch_cancel(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend
    from .batch import cancel_batch

    job = _load_job_or_fail(args.job_file)
    backend = create_backend(build_backend_config(args), require_model=False)
    cancel_batch(backend, job, args.job_file)
    return EXIT_OK


def _cmd_models(args: argparse.Namespace, token: CancellationToken) -> int:
    from .backend import create_backend

    backend = create_backend(build_backend_config(args), require_model=False)
    for model_id in backend.list_models():
        print(model_id)
    return EXIT_OK


def _cmd_export_prompts(args: argparse.Namespace, token: CancellationToken) -> int:
    from .prompts import DEFAULT_PROMPT_CONFIG, prompt_config_to_markdown

    args.path.parent.mkdir(parents=True, exist_ok=True)
    args.path.write_text(prompt_config_to_markdown(DEFAULT_PROMPT_CONFIG), encoding="utf-8")
    log.info("Wrote default prompts to %s", args.path)
    return EXIT_OK


_COMMANDS: dict[str, Callable[[argparse.Namespace, CancellationToken], int]] = {
    "run": _cmd_run,
    "batch:submit": _cmd_batch_submit,
    "batch:status": _cmd_batch_status,
    "batch:import": _cmd_batch_import,
    "batch:cancel": _cmd_batch_cancel,
    "models": _cmd_models,
    "export-prompts": _cmd_export_prompts,
}


def main(argv: list[str] | None = None) -> int:
    """Run one CLI command and return its exit code."""
    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=args.output_dir,
        log_file=args.log_file,
    )

    key = args.command
    if args.command == "batch":
        key = f"batch:{args.batch_command}"
    command = _COMMANDS[key]

    token = CancellationToken()
    restore: Optional[Callable[[], None]] = None
    try:
        restore = _install_sigint(token)
    except ValueError:
        # signal handlers can only be installed from the main thread
        restore = None

    t0 = time.perf_counter()
    try:
        return command(args, token)
    except Cancelled:
        log.warning("Run cancelled; no output written.")
        return EXIT_CANCELLED
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except BatchStateError as exc:
        log.error("%s", exc)
        return EXIT_FAILURE
    finally:
        if restore is not None:
            restore()
        log.debug("Command %s finished in %.2fs", key, time.perf_counter() - t0)
