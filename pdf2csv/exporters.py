"""Write extraction rows to CSV or XLSX."""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

import pandas as pd

from .errors import ConfigurationError
from .models import ExtractionRow

log = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "pdf_name",
    "paragraph",
    "paragraph_index",
    "page_number",
    "section_heading",
    "notes",
    "confidence",
]
SUPPORTED_SUFFIXES = (".csv", ".xlsx")


def rows_to_frame(rows: Sequence[ExtractionRow]) -> pd.DataFrame:
    """Build a frame in export column order; missing values stay null."""
    df = pd.DataFrame([asdict(row) for row in rows], columns=EXPORT_COLUMNS)
    for column in ("paragraph_index", "page_number"):
        df[column] = pd.to_numeric(df[column], errors="coerce").astype("Int64")
    df["confidence"] = pd.to_numeric(df["confidence"], errors="coerce")
    return df


def check_output_path(path: Path) -> str:
    """Return the lowercased suffix of *path*, rejecting unsupported formats."""
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ConfigurationError(
            f"Unsupported output format {suffix or '(none)'}; use one of {', '.join(SUPPORTED_SUFFIXES)}."
        )
    return suffix


def write_rows(rows: Sequence[ExtractionRow], path: Path) -> Path:
    """Write *rows* to *path*; the suffix picks the format."""
    suffix = check_output_path(path)

    df = rows_to_frame(rows)
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".csv":
        df.to_csv(path, index=False, encoding="utf-8")
    else:
        df.to_excel(path, index=False, sheet_name="paragraphs", engine="openpyxl")
    log.info("Wrote %s row(s) to %s", len(df), path)
    return path
