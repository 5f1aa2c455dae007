"""Quality gate shared by the pre- and post-classification stages."""

from __future__ import annotations

import math
import re
from typing import Any, Mapping, Optional

from .models import OllamaSettings, QualitySettings
from .utils import normalize_spaces

DEFAULT_QUALITY_SETTINGS = QualitySettings()
DEFAULT_OLLAMA_SETTINGS = OllamaSettings()

_ALPHA_RE = re.compile(r"[A-Za-z]")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]?$")


def _finite(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if not math.isfinite(value):
        return fallback
    return float(value)


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _get(data: Optional[Mapping[str, Any]], key: str) -> Any:
    if data is None:
        return None
    if isinstance(data, Mapping):
        return data.get(key)
    return getattr(data, key, None)


def sanitize_quality_settings(data: Any = None) -> QualitySettings:
    """Clamp user-supplied thresholds into range, defaulting bad values.

    Accepts a mapping, a ``QualitySettings`` instance or ``None``.
    """
    d = DEFAULT_QUALITY_SETTINGS
    require = _get(data, "require_sentence_terminator_for_short_paragraphs")
    return QualitySettings(
        min_words_per_paragraph=math.floor(
            _clamp(_finite(_get(data, "min_words_per_paragraph"), d.min_words_per_paragraph), 1, 100)
        ),
        min_alpha_chars_per_paragraph=math.floor(
            _clamp(
                _finite(_get(data, "min_alpha_chars_per_paragraph"), d.min_alpha_chars_per_paragraph),
                1,
                600,
            )
        ),
        short_paragraph_word_threshold=math.floor(
            _clamp(
                _finite(_get(data, "short_paragraph_word_threshold"), d.short_paragraph_word_threshold),
                1,
                200,
            )
        ),
        require_sentence_terminator_for_short_paragraphs=(
            bool(require)
            if require is not None
            else d.require_sentence_terminator_for_short_paragraphs
        ),
    )


def sanitize_ollama_settings(data: Any = None) -> OllamaSettings:
    d = DEFAULT_OLLAMA_SETTINGS
    native = _get(data, "use_native_tool_calling")
    return OllamaSettings(
        temperature=_clamp(_finite(_get(data, "temperature"), d.temperature), 0, 2),
        top_p=_clamp(_finite(_get(data, "top_p"), d.top_p), 0, 1),
        top_k=math.floor(_clamp(_finite(_get(data, "top_k"), d.top_k), 0, 500)),
        min_p=_clamp(_finite(_get(data, "min_p"), d.min_p), 0, 1),
        repeat_penalty=_clamp(_finite(_get(data, "repeat_penalty"), d.repeat_penalty), 0.5, 3),
        context_size=math.floor(
            _clamp(_finite(_get(data, "context_size"), d.context_size), 256, 262144)
        ),
        use_native_tool_calling=bool(native) if native is not None else d.use_native_tool_calling,
    )


def is_acceptable(text: str, settings: QualitySettings) -> bool:
    """Return True if *text* looks like a codable narrative paragraph."""
    normalized = normalize_spaces(text)
    if not normalized:
        return False

    words = normalized.split(" ")
    if len(words) < settings.min_words_per_paragraph:
        return False

    if len(_ALPHA_RE.findall(normalized)) < settings.min_alpha_chars_per_paragraph:
        return False

    if not settings.require_sentence_terminator_for_short_paragraphs:
        return True

    if (
        len(words) < settings.short_paragraph_word_threshold
        and not _SENTENCE_END_RE.search(normalized)
    ):
        return False

    return True
