"""Turn raw model output into typed keep/paragraph decisions.

Model output is untrusted: the JSON object is located, decoded and then
validated field by field. Missing primary arrays are hard failures; bad
individual items are dropped.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

from .errors import DecisionParseError
from .models import ChunkDecision, KeepDecision, VisionPageDecision, VisionParagraph

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json_object(raw: str) -> str:
    """Return the JSON object text embedded in *raw* model output."""
    fenced = _FENCED_RE.search(raw)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()

    start = raw.find("{")
    end = raw.rfind("}")
    if start < 0 or end <= start:
        raise DecisionParseError("Model output did not contain JSON.")
    return raw[start : end + 1]


def parse_json_object(raw: str) -> Any:
    text = extract_json_object(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecisionParseError(f"Model output contained invalid JSON: {exc}") from exc


def clamp_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return max(0.0, min(1.0, float(value)))


def _optional_text(value: Any) -> Optional[str]:
    return value.strip() if isinstance(value, str) else None


def _warnings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]


def normalize_decision(raw: Any) -> ChunkDecision:
    """Validate a text-mode ``{"keep": [...], "warnings": [...]}`` object."""
    keep_items = raw.get("keep") if isinstance(raw, dict) else None
    if not isinstance(keep_items, list):
        raise DecisionParseError("Missing keep array in model JSON response.")

    keep: list[KeepDecision] = []
    for item in keep_items:
        if not isinstance(item, dict):
            continue
        item_id = item.get("id")
        if not isinstance(item_id, str) or not item_id.strip():
            continue
        keep.append(
            KeepDecision(
                id=item_id,
                section_heading=_optional_text(item.get("section_heading")),
                note=_optional_text(item.get("note")),
                confidence=clamp_confidence(item.get("confidence")),
                possible_boilerplate=bool(item.get("possible_boilerplate")),
            )
        )
    return ChunkDecision(keep=keep, warnings=_warnings(raw.get("warnings")))


def normalize_vision_decision(raw: Any) -> VisionPageDecision:
    """Validate a vision-mode ``{"paragraphs": [...], "warnings": [...]}`` object."""
    items = raw.get("paragraphs") if isinstance(raw, dict) else None
    if not isinstance(items, list):
        raise DecisionParseError("Missing paragraphs array in vision JSON response.")

    paragraphs: list[VisionParagraph] = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("text"), str):
            continue
        text = item["text"].strip()
        if not text:
            continue
        paragraphs.append(
            VisionParagraph(
                text=text,
                section_heading=_optional_text(item.get("section_heading")),
                note=_optional_text(item.get("note")),
                confidence=clamp_confidence(item.get("confidence")),
                possible_boilerplate=bool(item.get("possible_boilerplate")),
            )
        )
    return VisionPageDecision(paragraphs=paragraphs, warnings=_warnings(raw.get("warnings")))


def parse_text_decision(raw_output: str) -> ChunkDecision:
    return normalize_decision(parse_json_object(raw_output))


def parse_vision_decision(raw_output: str) -> VisionPageDecision:
    return normalize_vision_decision(parse_json_object(raw_output))
