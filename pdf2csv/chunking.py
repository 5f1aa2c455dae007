"""Size-bounded grouping of paragraph candidates into classifier requests."""

from __future__ import annotations

import logging
from typing import Sequence

from .models import ParagraphCandidate
from .utils import CHUNK_MAX_CHARS, CHUNK_PARAGRAPH_OVERHEAD

log = logging.getLogger(__name__)


def estimate_serialized_size(
    candidate: ParagraphCandidate,
    overhead: int = CHUNK_PARAGRAPH_OVERHEAD,
) -> int:
    """Approximate JSON size of one candidate inside a request payload."""
    return len(candidate.text) + overhead


def chunk_paragraphs(
    paragraphs: Sequence[ParagraphCandidate],
    max_chars: int = CHUNK_MAX_CHARS,
    overhead: int = CHUNK_PARAGRAPH_OVERHEAD,
) -> list[list[ParagraphCandidate]]:
    """Greedily pack candidates into chunks of at most *max_chars*.

    Order is preserved and a candidate is never split; an oversized
    candidate gets a chunk of its own. Boundaries depend only on sizes.
    """
    chunks: list[list[ParagraphCandidate]] = []
    current: list[ParagraphCandidate] = []
    current_size = 0

    for paragraph in paragraphs:
        size = estimate_serialized_size(paragraph, overhead)
        if current and current_size + size > max_chars:
            chunks.append(current)
            current = []
            current_size = 0
        current.append(paragraph)
        current_size += size

    if current:
        chunks.append(current)

    log.debug("chunk_paragraphs: %s candidates -> %s chunks", len(paragraphs), len(chunks))
    return chunks
