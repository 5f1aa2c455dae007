"""PyMuPDF text-layer reading and page rendering."""

from __future__ import annotations

import base64
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import fitz

from .filters import DEFAULT_FILTER_POLICY, FilterPolicy, build_parsed_document
from .models import PageImage, ParsedDocument, TextRun
from .runtime import CancellationToken, raise_if_cancelled
from .utils import RENDER_JPEG_QUALITY, RENDER_MAX_DIMENSION

log = logging.getLogger(__name__)

MAX_RENDER_SCALE = 2.0
MIN_RENDER_SCALE = 0.6

# PyMuPDF is not thread-safe; every document access holds this lock.
_FITZ_LOCK = threading.RLock()


def read_page_runs(page: Any) -> list[TextRun]:
    """Return the positioned text spans of one page.

    PyMuPDF reports baselines with y growing downward; runs are flipped
    into PDF user space so larger y means higher on the page.
    """
    height = page.rect.height
    runs: list[TextRun] = []
    for block in page.get_text("dict").get("blocks", []):
        if block.get("type", 0) != 0:
            continue
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                text = span.get("text", "")
                if not text.strip():
                    continue
                x, y = span["origin"]
                runs.append(TextRun(text=text, x=float(x), y=float(height - y)))
    return runs


def extract_pdf_candidates(
    pdf_path: Path,
    *,
    name: Optional[str] = None,
    policy: FilterPolicy = DEFAULT_FILTER_POLICY,
    on_page_progress: Optional[Callable[[int, int], None]] = None,
    cancel: Optional[CancellationToken] = None,
) -> ParsedDocument:
    """Parse the text layer of *pdf_path* into filtered paragraph candidates.

    Unreadable files raise; pages without text are counted, not fatal.
    """
    name = name or pdf_path.name
    log.info("extract_pdf_candidates: START - %s", name)
    t0 = time.time()

    pages: list[list[TextRun]] = []
    with _FITZ_LOCK, fitz.open(str(pdf_path)) as doc:
        for page in doc:
            raise_if_cancelled(cancel)
            pages.append(read_page_runs(page))

    parsed = build_parsed_document(name, pages, policy, on_page=on_page_progress)
    log.info(
        "extract_pdf_candidates: DONE - %s pages=%s candidates=%s no_text_layer=%s in %.2fs",
        name,
        parsed.total_pages,
        len(parsed.paragraphs),
        parsed.pages_without_text_layer,
        time.time() - t0,
    )
    return parsed


def render_scale(width: float, height: float, max_dimension: int = RENDER_MAX_DIMENSION) -> float:
    largest = max(width, height, 1.0)
    return max(MIN_RENDER_SCALE, min(MAX_RENDER_SCALE, max_dimension / largest))


def render_page_image(
    page: Any,
    *,
    max_dimension: int = RENDER_MAX_DIMENSION,
    jpeg_quality: int = RENDER_JPEG_QUALITY,
) -> str:
    """Rasterize *page* to a JPEG ``data:`` URL."""
    scale = render_scale(page.rect.width, page.rect.height, max_dimension)
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
    encoded = base64.b64encode(pix.tobytes("jpeg", jpg_quality=jpeg_quality)).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


def iter_page_images(
    pdf_path: Path,
    *,
    cancel: Optional[CancellationToken] = None,
    max_dimension: int = RENDER_MAX_DIMENSION,
) -> Iterator[PageImage]:
    """Yield every page of *pdf_path* rendered for a vision model, in order."""
    with _FITZ_LOCK:
        doc = fitz.open(str(pdf_path))
    try:
        total = doc.page_count
        for index in range(total):
            raise_if_cancelled(cancel)
            t0 = time.time()
            with _FITZ_LOCK:
                image = render_page_image(doc[index], max_dimension=max_dimension)
            log.debug(
                "render_page_image: %s page %s/%s (%s chars) in %.2fs",
                pdf_path.name,
                index + 1,
                total,
                len(image),
                time.time() - t0,
            )
            yield PageImage(page_number=index + 1, total_pages=total, image_data_url=image)
    finally:
        with _FITZ_LOCK:
            doc.close()
