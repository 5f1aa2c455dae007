"""PDF -> narrative paragraph CSV/XLSX extraction pipeline.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from pdf2csv import X`` works.
"""

from .assembler import dedupe_rows
from .backend import BackendConfig, OllamaBackend, OpenAIBackend, create_backend
from .batch import (
    BatchJob,
    PreparedBatch,
    import_batch_results,
    load_job,
    prepare_batch,
    submit_batch,
)
from .chunking import chunk_paragraphs
from .conversion import extract_pdf_candidates, iter_page_images
from .decisions import parse_text_decision, parse_vision_decision
from .errors import (
    BatchLimitError,
    BatchStateError,
    Cancelled,
    ConfigurationError,
    DecisionParseError,
    HttpError,
)
from .exporters import EXPORT_COLUMNS, write_rows
from .extractor import ExtractionOptions, run_extraction
from .filters import FilterPolicy, build_parsed_document, is_likely_boilerplate
from .models import (
    BatchManifest,
    ExtractionRow,
    ParagraphCandidate,
    ParsedDocument,
    PromptConfig,
    QualitySettings,
    RunProgress,
    TextRun,
)
from .prompts import DEFAULT_PROMPT_CONFIG, parse_prompt_markdown, prompt_config_to_markdown
from .quality import is_acceptable, sanitize_quality_settings
from .runtime import CancellationToken, map_with_concurrency, with_retries
from .segmenter import segment_page
from .sources import discover_pdfs

__all__ = [
    # Models
    "TextRun",
    "ParagraphCandidate",
    "ParsedDocument",
    "QualitySettings",
    "PromptConfig",
    "ExtractionRow",
    "RunProgress",
    "BatchManifest",
    # Errors
    "Cancelled",
    "HttpError",
    "ConfigurationError",
    "BatchLimitError",
    "BatchStateError",
    "DecisionParseError",
    # Segmentation and filtering
    "segment_page",
    "FilterPolicy",
    "is_likely_boilerplate",
    "build_parsed_document",
    "is_acceptable",
    "sanitize_quality_settings",
    "chunk_paragraphs",
    "parse_text_decision",
    "parse_vision_decision",
    # Runtime
    "CancellationToken",
    "map_with_concurrency",
    "with_retries",
    # PDF input
    "discover_pdfs",
    "extract_pdf_candidates",
    "iter_page_images",
    # Backends and prompts
    "BackendConfig",
    "OpenAIBackend",
    "OllamaBackend",
    "create_backend",
    "DEFAULT_PROMPT_CONFIG",
    "parse_prompt_markdown",
    "prompt_config_to_markdown",
    # Extraction
    "ExtractionOptions",
    "run_extraction",
    "dedupe_rows",
    # Batch
    "PreparedBatch",
    "BatchJob",
    "prepare_batch",
    "submit_batch",
    "import_batch_results",
    "load_job",
    # Export
    "EXPORT_COLUMNS",
    "write_rows",
]
