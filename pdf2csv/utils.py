"""Cross-cutting helpers: constants, text normalization and job file I/O."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

APP_NAME = "pdf2csv"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
BATCH_ENDPOINT = "/v1/chat/completions"
BATCH_COMPLETION_WINDOW = "24h"
MAX_BATCH_REQUESTS = 50_000
MAX_BATCH_BYTES = 200 * 1024 * 1024
CHUNK_MAX_CHARS = 7000
CHUNK_PARAGRAPH_OVERHEAD = 120
RENDER_MAX_DIMENSION = 1600
RENDER_JPEG_QUALITY = 86
JOB_FILE_NAME = "batch_job.json"
TERMINAL_BATCH_STATUSES = frozenset({"completed", "failed", "expired", "cancelled"})

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def normalize_spaces(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


# ---------------------------------------------------------------------------
# Batch job state
# ---------------------------------------------------------------------------


def save_batch_job(path: Path, job: dict[str, Any]) -> Path:
    """Persist the batch job record and return the file path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(job, fh, indent=2, ensure_ascii=False, default=str)
    return path


def load_batch_job(path: Path) -> Optional[dict[str, Any]]:
    """Load a batch job record, or ``None`` if missing or incomplete."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            job = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        return None

    if not isinstance(job, dict):
        return None
    manifest = job.get("manifest")
    if (
        not job.get("status")
        or not isinstance(manifest, dict)
        or not isinstance(manifest.get("tasks"), list)
        or not isinstance(manifest.get("files"), list)
    ):
        return None
    return job
