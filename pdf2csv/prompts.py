"""System prompts, prompt-file round trip and per-request message builders."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import ConfigurationError
from .models import ParagraphCandidate, PromptConfig, QualitySettings

TEXT_FILTER_SECTION = "text_filter_system"
VISION_SECTION = "vision_page_system"

DEFAULT_TEXT_FILTER_SYSTEM = "\n".join(
    [
        "You filter PDF text for qualitative coding.",
        "Keep only core narrative paragraphs with full sentence content.",
        "Exclude short fragments, standalone headings, labels, menu items, callouts, captions, and bullet stubs unless they form full sentence paragraphs.",
        "Remove boilerplate: headers, footers, page numbers, cookie/privacy/subscription notices, navigation, ads/promos, contact/social blocks, repeated templates, and non-core table-of-contents text.",
        "Preserve original wording and reading order. Do not paraphrase.",
        "Only keep paragraphs that are useful as qualitative coding units (generally sentence-based, not title fragments).",
        "If uncertain, prefer exclusion or include with possible_boilerplate=true and note.",
        "Respond with strict JSON object:",
        '{"keep":[{"id":"string","possible_boilerplate":false,"section_heading":"optional","note":"optional","confidence":0.0}],"warnings":["optional warning"]}',
    ]
)

DEFAULT_VISION_SYSTEM = "\n".join(
    [
        "You are performing OCR and main-content extraction from a PDF page image.",
        "Extract readable paragraph text exactly as written. Do not paraphrase.",
        "Keep only main subject-matter content with full sentence paragraphs suitable for qualitative coding.",
        "Exclude short fragments and standalone headings/titles unless they are part of a full sentence paragraph.",
        "Remove extraneous content including headers, footers, page numbers, navigation, ads/promotions, cookie/privacy/subscription banners, repeated disclaimers not central to content, contact/social blocks, repeated template text, and non-core table-of-contents entries.",
        "Preserve reading order and coherent paragraph boundaries.",
        "If you can extract any valid paragraph content, return it directly and do not ask for a higher-resolution input.",
        "Only emit a low-resolution warning when no reliable paragraph can be extracted from the page.",
        "If uncertain about boilerplate, exclude it or keep it with possible_boilerplate=true and note.",
        "Respond with strict JSON only:",
        '{"paragraphs":[{"text":"string","section_heading":"optional","note":"optional","possible_boilerplate":false,"confidence":0.0}],"warnings":["optional warning"]}',
    ]
)

DEFAULT_PROMPT_CONFIG = PromptConfig(
    text_filter_system=DEFAULT_TEXT_FILTER_SYSTEM,
    vision_system=DEFAULT_VISION_SYSTEM,
)

# Function schemas offered to backends that support native tool calling.
TEXT_FILTER_TOOL: dict[str, Any] = {
    "name": "return_text_filter_decision",
    "description": "Return paragraph IDs to keep as main narrative content for qualitative coding.",
    "parameters": {
        "type": "object",
        "properties": {
            "keep": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "possible_boilerplate": {"type": "boolean"},
                        "section_heading": {"type": "string"},
                        "note": {"type": "string"},
                        "confidence": {"type": "number"},
                    },
                    "required": ["id"],
                },
            },
            "warnings": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["keep"],
    },
}

VISION_PAGE_TOOL: dict[str, Any] = {
    "name": "return_vision_page_paragraphs",
    "description": "Return OCR paragraph extraction for one PDF page image, excluding non-core text.",
    "parameters": {
        "type": "object",
        "properties": {
            "paragraphs": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "text": {"type": "string"},
                        "section_heading": {"type": "string"},
                        "note": {"type": "string"},
                        "possible_boilerplate": {"type": "boolean"},
                        "confidence": {"type": "number"},
                    },
                    "required": ["text"],
                },
            },
            "warnings": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["paragraphs"],
    },
}

_NEXT_HEADING_RE = re.compile(r"^\s*##\s+", re.MULTILINE)
_FENCED_RE = re.compile(r"```(?:text|md|markdown)?\s*([\s\S]*?)```", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Prompt markdown
# ---------------------------------------------------------------------------


def _section_content(markdown: str, section: str) -> Optional[str]:
    heading = re.search(
        rf"^##\s+{re.escape(section)}\s*$", markdown, re.IGNORECASE | re.MULTILINE
    )
    if heading is None:
        return None

    remainder = markdown[heading.end() :]
    next_heading = _NEXT_HEADING_RE.search(remainder)
    raw_section = remainder[: next_heading.start()] if next_heading else remainder

    fenced = _FENCED_RE.search(raw_section)
    content = fenced.group(1) if fenced else raw_section
    return content.strip() or None


def parse_prompt_markdown(markdown: str) -> PromptConfig:
    """Read both system prompts from a ``## section`` markdown document."""
    text_filter = _section_content(markdown, TEXT_FILTER_SECTION)
    vision = _section_content(markdown, VISION_SECTION)
    if not text_filter or not vision:
        raise ConfigurationError(
            "Prompt markdown is invalid. Required sections: "
            f"## {TEXT_FILTER_SECTION} and ## {VISION_SECTION}."
        )
    return PromptConfig(text_filter_system=text_filter, vision_system=vision)


def prompt_config_to_markdown(config: PromptConfig) -> str:
    return "\n".join(
        [
            "# PDF2CSV Prompt Configuration",
            "",
            "Edit the two sections below. Keep both section headers unchanged.",
            "",
            f"## {TEXT_FILTER_SECTION}",
            "```text",
            config.text_filter_system.strip(),
            "```",
            "",
            f"## {VISION_SECTION}",
            "```text",
            config.vision_system.strip(),
            "```",
            "",
        ]
    )


def load_prompt_config(path: Optional[Path]) -> PromptConfig:
    if path is None:
        return DEFAULT_PROMPT_CONFIG
    return parse_prompt_markdown(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Request messages
# ---------------------------------------------------------------------------


def _terminator_rule(quality: QualitySettings, *, vision: bool) -> str:
    if not quality.require_sentence_terminator_for_short_paragraphs:
        return "Terminal punctuation is optional for short paragraphs."
    threshold = quality.short_paragraph_word_threshold
    if vision:
        return (
            f"If a paragraph has fewer than {threshold} words, "
            "require terminal punctuation (.,!,?)."
        )
    return f"If paragraph is shorter than {threshold} words, keep only if it ends with ., !, or ?."


def build_text_filter_messages(
    system_prompt: str,
    quality: QualitySettings,
    chunk: Sequence[ParagraphCandidate],
) -> list[dict[str, Any]]:
    payload = json.dumps(
        [candidate.to_dict() for candidate in chunk],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    user_prompt = "\n".join(
        [
            "Input paragraphs JSON:",
            payload,
            f"Minimum words per paragraph: {quality.min_words_per_paragraph}",
            f"Minimum alphabetic characters per paragraph: {quality.min_alpha_chars_per_paragraph}",
            _terminator_rule(quality, vision=False),
            "Return only JSON with IDs to keep.",
        ]
    )
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def build_vision_messages(
    system_prompt: str,
    quality: QualitySettings,
    pdf_name: str,
    page_number: int,
    image_data_url: str,
) -> list[dict[str, Any]]:
    instructions = "\n".join(
        [
            f"Document: {pdf_name}",
            f"Page: {page_number}",
            "Extract main-body paragraphs from this page image.",
            f"Minimum words per paragraph: {quality.min_words_per_paragraph}",
            f"Minimum alphabetic characters per paragraph: {quality.min_alpha_chars_per_paragraph}",
            _terminator_rule(quality, vision=True),
        ]
    )
    return [
        {"role": "system", "content": system_prompt},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": instructions},
                {"type": "image_url", "image_url": {"url": image_data_url}},
            ],
        },
    ]
