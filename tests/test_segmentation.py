"""Segmenter, boilerplate/repeat filters, quality gate and chunker."""

from __future__ import annotations

import pytest

from conftest import make_candidates
from pdf2csv.chunking import chunk_paragraphs, estimate_serialized_size
from pdf2csv.filters import (
    FilterPolicy,
    build_parsed_document,
    is_likely_boilerplate,
    is_likely_page_number,
    remove_global_repeats,
)
from pdf2csv.models import ParagraphCandidate, QualitySettings, TextRun
from pdf2csv.quality import is_acceptable, sanitize_quality_settings
from pdf2csv.segmenter import (
    append_token,
    group_runs_into_lines,
    lines_to_paragraphs,
    median_line_gap,
    segment_page,
)

SCENARIO_A = (
    "New research confirms that coastal erosion accelerated significantly "
    "over the past decade."
)


def _page(*lines: tuple[float, str], x: float = 72.0) -> list[TextRun]:
    return [TextRun(text=text, x=x, y=y) for y, text in lines]


# ---------------------------------------------------------------------------
# Segmenter
# ---------------------------------------------------------------------------


class TestSegmenter:
    def test_runs_on_same_baseline_join_left_to_right(self):
        runs = [
            TextRun("world", x=120, y=700.0),
            TextRun("Hello", x=72, y=701.5),
        ]
        lines = group_runs_into_lines(runs)
        assert [line.text for line in lines] == ["Hello world"]

    def test_reading_order_is_top_down(self):
        runs = _page((600, "second line"), (700, "first line"))
        assert [line.text for line in group_runs_into_lines(runs)] == [
            "first line",
            "second line",
        ]

    def test_hyphenated_line_break_is_undone(self):
        runs = _page((700, "The coastal sur-"), (686, "vey ended in May."))
        assert segment_page(runs) == ["The coastal survey ended in May."]

    def test_tight_punctuation(self):
        assert append_token("value", ",") == "value,"
        assert append_token("(", "note") == "(note"
        assert append_token("alpha", "beta") == "alpha beta"

    def test_large_gap_starts_new_paragraph(self):
        runs = _page(
            (700, "First paragraph line one"),
            (686, "first paragraph line two."),
            (650, "Second paragraph starts here"),
            (636, "and ends here."),
        )
        assert segment_page(runs) == [
            "First paragraph line one first paragraph line two.",
            "Second paragraph starts here and ends here.",
        ]

    def test_median_gap_defaults_without_samples(self):
        lines = group_runs_into_lines(_page((700, "only line")))
        assert median_line_gap(lines) == 12.0

    def test_empty_page_yields_nothing(self):
        assert segment_page([]) == []
        assert lines_to_paragraphs([]) == []

    def test_whitespace_only_runs_are_ignored(self):
        runs = [TextRun("   ", 72, 700), TextRun("Kept text", 72, 680)]
        assert segment_page(runs) == ["Kept text"]


# ---------------------------------------------------------------------------
# Boilerplate and repeat filters
# ---------------------------------------------------------------------------


class TestFilters:
    def test_contact_us_is_boilerplate(self):
        assert is_likely_boilerplate("Contact Us") is True

    @pytest.mark.parametrize("text", ["12", "Page 3", "4 / 20", "page 17"])
    def test_page_numbers(self, text):
        assert is_likely_page_number(text)
        assert is_likely_boilerplate(text) is True

    def test_short_and_symbol_heavy_text_is_boilerplate(self):
        assert is_likely_boilerplate("abc") is True
        assert is_likely_boilerplate("$1,234.56 / 7%") is True

    def test_narrative_is_not_boilerplate(self):
        assert is_likely_boilerplate(SCENARIO_A) is False

    def test_repeated_cookie_policy_removed_on_three_pages(self):
        candidates = [
            ParagraphCandidate("p1-1", 1, "Cookie Policy"),
            ParagraphCandidate("p4-1", 4, "Cookie Policy"),
            ParagraphCandidate("p7-1", 7, "Cookie  Policy"),
            ParagraphCandidate("p7-2", 7, SCENARIO_A),
        ]
        kept, warnings = remove_global_repeats(candidates)
        assert [c.id for c in kept] == ["p7-2"]
        assert warnings and "Removed 3 repeated" in warnings[0]

    def test_repeats_on_two_pages_survive(self):
        candidates = [
            ParagraphCandidate("p1-1", 1, "Quarterly Field Report"),
            ParagraphCandidate("p2-1", 2, "Quarterly Field Report"),
        ]
        kept, warnings = remove_global_repeats(candidates)
        assert len(kept) == 2
        assert warnings == []

    def test_repeated_sentence_with_terminator_survives(self):
        text = "This sentence repeats on every page."
        candidates = [ParagraphCandidate(f"p{i}-1", i, text) for i in (1, 2, 3)]
        kept, _ = remove_global_repeats(candidates)
        assert len(kept) == 3

    def test_repeat_policy_is_tunable(self):
        candidates = [
            ParagraphCandidate("p1-1", 1, "Quarterly Field Report"),
            ParagraphCandidate("p2-1", 2, "Quarterly Field Report"),
        ]
        kept, _ = remove_global_repeats(candidates, FilterPolicy(repeat_min_pages=2))
        assert kept == []

    def test_page_without_runs_counts_as_no_text_layer(self):
        parsed = build_parsed_document(
            "doc.pdf",
            [[], _page((700, SCENARIO_A))],
        )
        assert parsed.total_pages == 2
        assert parsed.pages_without_text_layer == 1
        assert [c.id for c in parsed.paragraphs] == ["p2-1"]
        assert any("1/2 page(s) without" in w for w in parsed.warnings)

    def test_candidate_ids_keep_pre_filter_ordinal(self):
        runs = _page((760, "Contact Us"), (700, SCENARIO_A))
        parsed = build_parsed_document("doc.pdf", [runs])
        assert [c.id for c in parsed.paragraphs] == ["p1-2"]
        assert parsed.warnings[0].startswith("Page 1: removed 1 likely boilerplate")

    def test_progress_reported_per_page(self):
        seen = []
        build_parsed_document("doc.pdf", [[], []], on_page=lambda p, t: seen.append((p, t)))
        assert seen == [(1, 2), (2, 2)]


# ---------------------------------------------------------------------------
# Quality gate
# ---------------------------------------------------------------------------


class TestQuality:
    def test_scenario_sentence_is_accepted(self):
        assert is_acceptable(SCENARIO_A, QualitySettings()) is True

    def test_short_fragment_without_terminator_rejected(self):
        assert is_acceptable("Results from the northern survey sites", QualitySettings()) is False

    def test_short_sentence_with_terminator_accepted(self):
        assert is_acceptable("The survey sites all flooded in May.", QualitySettings()) is True

    def test_terminator_rule_can_be_disabled(self):
        settings = QualitySettings(require_sentence_terminator_for_short_paragraphs=False)
        assert is_acceptable("Results from the northern survey sites", settings) is True

    def test_quote_after_terminator_counts(self):
        assert is_acceptable('She said the water "rose fast."', QualitySettings()) is True

    def test_empty_text_rejected(self):
        assert is_acceptable("   ", QualitySettings()) is False

    @pytest.mark.parametrize(
        "text",
        [
            SCENARIO_A,
            "Short one.",
            "Residents described how storm surges reached their homes.",
            "A B C D E F G H.",
            "alpha beta gamma delta epsilon zeta eta theta iota kappa lambda mu",
        ],
    )
    def test_monotonic_in_thresholds(self, text):
        base = QualitySettings()
        for words in range(1, 15):
            for alpha in (1, 10, 18, 40, 80):
                looser = QualitySettings(min_words_per_paragraph=words, min_alpha_chars_per_paragraph=alpha)
                stricter_words = QualitySettings(
                    min_words_per_paragraph=words + 1, min_alpha_chars_per_paragraph=alpha
                )
                stricter_alpha = QualitySettings(
                    min_words_per_paragraph=words, min_alpha_chars_per_paragraph=alpha + 5
                )
                if not is_acceptable(text, looser):
                    assert not is_acceptable(text, stricter_words)
                    assert not is_acceptable(text, stricter_alpha)
        assert isinstance(is_acceptable(text, base), bool)

    def test_sanitize_clamps_and_defaults(self):
        settings = sanitize_quality_settings(
            {
                "min_words_per_paragraph": 0,
                "min_alpha_chars_per_paragraph": float("nan"),
                "short_paragraph_word_threshold": 999.7,
                "require_sentence_terminator_for_short_paragraphs": False,
            }
        )
        assert settings == QualitySettings(
            min_words_per_paragraph=1,
            min_alpha_chars_per_paragraph=18,
            short_paragraph_word_threshold=200,
            require_sentence_terminator_for_short_paragraphs=False,
        )

    def test_sanitize_floors_and_rejects_non_numeric(self):
        settings = sanitize_quality_settings({"min_words_per_paragraph": 7.9, "min_alpha_chars_per_paragraph": "20"})
        assert settings.min_words_per_paragraph == 7
        assert settings.min_alpha_chars_per_paragraph == 18

    def test_sanitize_none_gives_defaults(self):
        assert sanitize_quality_settings(None) == QualitySettings()


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------


class TestChunker:
    def test_empty_input_gives_no_chunks(self):
        assert chunk_paragraphs([]) == []

    def test_chunks_respect_budget_and_order(self):
        candidates = make_candidates(*["x" * 880 for _ in range(20)])
        chunks = chunk_paragraphs(candidates, max_chars=7000)
        assert all(chunks)
        assert [c for chunk in chunks for c in chunk] == candidates
        for chunk in chunks:
            assert sum(estimate_serialized_size(c) for c in chunk) <= 7000

    def test_oversized_candidate_gets_own_chunk(self):
        candidates = make_candidates("short text here.", "y" * 9000, "another short one.")
        chunks = chunk_paragraphs(candidates)
        assert [len(chunk) for chunk in chunks] == [1, 1, 1]

    def test_chunking_is_deterministic(self):
        candidates = make_candidates(*[("word " * n).strip() for n in range(1, 400, 7)])
        assert chunk_paragraphs(candidates) == chunk_paragraphs(candidates)
