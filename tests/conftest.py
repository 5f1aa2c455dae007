"""Shared fixtures for the pdf2csv test suite.

PDFs are generated with PyMuPDF per session instead of being checked in.
Model endpoints are replaced by ``FakeBackend``.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

import fitz
import pytest

from pdf2csv.backend import BackendConfig
from pdf2csv.models import ParagraphCandidate

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")

HEADER = "Northwind Field Notes Quarterly"

PAGE_PARAGRAPHS = [
    [
        [
            "Coastal erosion accelerated significantly across the northern",
            "shoreline during the past decade, according to new surveys.",
        ],
        [
            "Residents described how storm surges reached homes that had",
            "been considered safe for several generations of families.",
        ],
    ],
    [
        [
            "Local officials responded by commissioning a study of dune",
            "restoration methods used successfully in other regions.",
        ],
        [
            "The study recommended planting native grasses and limiting",
            "vehicle access to the most fragile stretches of beach.",
        ],
    ],
    [
        [
            "Volunteers planted thousands of seedlings over two seasons,",
            "and early monitoring suggests the dunes are stabilizing.",
        ],
        [
            "Researchers caution that long term outcomes depend on how",
            "often severe storms strike the coast in coming years.",
        ],
    ],
]


def _write_text_pdf(path: Path) -> Path:
    doc = fitz.open()
    for page_index, paragraphs in enumerate(PAGE_PARAGRAPHS, start=1):
        page = doc.new_page(width=595, height=842)
        page.insert_text((72, 60), HEADER, fontsize=11)
        y = 100.0
        for paragraph in paragraphs:
            for line in paragraph:
                page.insert_text((72, y), line, fontsize=11)
                y += 14
            y += 18
        page.insert_text((290, 800), str(page_index), fontsize=10)
    doc.save(str(path))
    doc.close()
    return path


def _write_blank_pdf(path: Path, pages: int = 2) -> Path:
    doc = fitz.open()
    for _ in range(pages):
        page = doc.new_page(width=300, height=400)
        page.draw_rect(fitz.Rect(40, 40, 260, 360), color=(0, 0, 0), width=1)
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture(scope="session")
def pdf_dir(tmp_path_factory) -> Path:
    return tmp_path_factory.mktemp("pdfs")


@pytest.fixture(scope="session")
def text_pdf(pdf_dir: Path) -> Path:
    """Three-page PDF with a repeated header, two paragraphs and a page number per page."""
    t0 = time.time()
    path = _write_text_pdf(pdf_dir / "field_notes.pdf")
    log.info(">>> FIXTURE text_pdf: written in %.2fs", time.time() - t0)
    return path


@pytest.fixture(scope="session")
def blank_pdf(pdf_dir: Path) -> Path:
    """Two pages of vector drawing only: no text layer."""
    return _write_blank_pdf(pdf_dir / "scanned.pdf")


@pytest.fixture
def broken_pdf(tmp_path: Path) -> Path:
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"this is not a pdf")
    return path


@pytest.fixture
def tmp_output(tmp_path: Path) -> Path:
    """Return a temporary output directory for a single test."""
    return tmp_path / "output"


def make_candidates(*texts: str, page: int = 1) -> list[ParagraphCandidate]:
    return [
        ParagraphCandidate(id=f"p{page}-{i}", page_number=page, text=text)
        for i, text in enumerate(texts, start=1)
    ]


# ---------------------------------------------------------------------------
# Fake model backend
# ---------------------------------------------------------------------------


def keep_everything(messages: list[dict[str, Any]], tool: Optional[dict[str, Any]]) -> str:
    """Text requests: keep every id. Vision requests: one paragraph per page."""
    user = messages[1]["content"]
    if isinstance(user, str):
        candidates = json.loads(user.splitlines()[1])
        return json.dumps({"keep": [{"id": c["id"], "confidence": 0.9} for c in candidates]})

    instructions = user[0]["text"]
    page = re.search(r"^Page: (\d+)$", instructions, re.MULTILINE).group(1)
    return json.dumps(
        {
            "paragraphs": [
                {
                    "text": f"Page {page} shows a handwritten account of the flood and its aftermath.",
                    "section_heading": "Scanned notes",
                }
            ],
            "warnings": ["Low-resolution scan; some words may be uncertain."],
        }
    )


class FakeBackend:
    """In-process stand-in for the model endpoint (live and batch calls)."""

    kind = "openai"

    def __init__(
        self,
        responder: Callable[[list[dict[str, Any]], Optional[dict[str, Any]]], str] = keep_everything,
        *,
        kind: str = "openai",
        model: str = "fake-model",
    ) -> None:
        self.responder = responder
        self.kind = kind
        self.model = model
        self.config = BackendConfig(kind=kind, base_url="http://fake.local/v1", model=model)
        self.calls: list[list[dict[str, Any]]] = []
        self.uploads: list[bytes] = []
        self.batch: dict[str, Any] = {"id": "batch_1", "status": "validating"}
        self.files: dict[str, str] = {}

    def complete(self, messages, *, json_mode=True, tool=None, cancel=None) -> str:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.calls.append(messages)
        return self.responder(messages, tool)

    # batch API
    def upload_batch_input(self, data: bytes, file_name: str) -> dict[str, Any]:
        self.uploads.append(data)
        return {"id": "file-input", "filename": file_name}

    def create_batch(self, input_file_id: str, metadata=None) -> dict[str, Any]:
        self.batch["input_file_id"] = input_file_id
        self.batch["metadata"] = metadata
        return dict(self.batch)

    def retrieve_batch(self, batch_id: str) -> dict[str, Any]:
        return dict(self.batch)

    def cancel_batch(self, batch_id: str) -> dict[str, Any]:
        self.batch["status"] = "cancelling"
        return dict(self.batch)

    def download_file_text(self, file_id: str) -> str:
        return self.files[file_id]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
