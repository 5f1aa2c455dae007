from __future__ import annotations

import pandas as pd
import pytest

from pdf2csv.errors import ConfigurationError
from pdf2csv.exporters import EXPORT_COLUMNS, check_output_path, rows_to_frame, write_rows
from pdf2csv.models import ExtractionRow, PromptConfig
from pdf2csv.prompts import (
    DEFAULT_PROMPT_CONFIG,
    load_prompt_config,
    parse_prompt_markdown,
    prompt_config_to_markdown,
)

ROWS = [
    ExtractionRow(
        pdf_name="field_notes.pdf",
        paragraph="Coastal erosion accelerated, according to new surveys.",
        paragraph_index=1,
        page_number=1,
        section_heading="Findings",
        confidence=0.9,
    ),
    ExtractionRow(
        pdf_name="broken.pdf",
        paragraph="",
        paragraph_index=1,
        notes="File processing failed: cannot open broken document",
    ),
]


def test_frame_column_order_and_nulls():
    df = rows_to_frame(ROWS)
    assert list(df.columns) == EXPORT_COLUMNS
    assert df["page_number"].isna().tolist() == [False, True]
    assert df["confidence"].isna().tolist() == [False, True]


def test_empty_rows_still_have_columns():
    assert list(rows_to_frame([]).columns) == EXPORT_COLUMNS


def test_write_csv(tmp_path):
    path = write_rows(ROWS, tmp_path / "out" / "paragraphs.csv")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == ",".join(EXPORT_COLUMNS)
    # Missing page number and confidence stay empty cells, not "nan" or "0".
    assert lines[2] == "broken.pdf,,1,,,File processing failed: cannot open broken document,"

    df = pd.read_csv(path)
    assert df.loc[0, "paragraph"] == ROWS[0].paragraph
    assert df.loc[0, "page_number"] == 1


def test_write_xlsx(tmp_path):
    path = write_rows(ROWS, tmp_path / "paragraphs.xlsx")

    df = pd.read_excel(path, sheet_name="paragraphs")
    assert list(df.columns) == EXPORT_COLUMNS
    assert df.loc[0, "section_heading"] == "Findings"
    assert df.loc[1, "notes"].startswith("File processing failed")


def test_unsupported_suffix(tmp_path):
    with pytest.raises(ConfigurationError, match="Unsupported output format .json"):
        write_rows(ROWS, tmp_path / "paragraphs.json")


def test_check_output_path(tmp_path):
    assert check_output_path(tmp_path / "Rows.XLSX") == ".xlsx"
    with pytest.raises(ConfigurationError, match=r"\(none\)"):
        check_output_path(tmp_path / "rows")
    assert not tmp_path.joinpath("rows").exists()


# ---------------------------------------------------------------------------
# Prompt markdown
# ---------------------------------------------------------------------------


def test_prompt_markdown_roundtrip(tmp_path):
    markdown = prompt_config_to_markdown(DEFAULT_PROMPT_CONFIG)
    assert markdown.startswith("# PDF2CSV Prompt Configuration")
    assert parse_prompt_markdown(markdown) == DEFAULT_PROMPT_CONFIG

    path = tmp_path / "prompts.md"
    path.write_text(markdown, encoding="utf-8")
    assert load_prompt_config(path) == DEFAULT_PROMPT_CONFIG
    assert load_prompt_config(None) == DEFAULT_PROMPT_CONFIG


def test_unfenced_sections_are_accepted():
    markdown = "\n".join(
        [
            "## Text_Filter_System",
            "Keep only narrative paragraphs.",
            "",
            "## vision_page_system",
            "Transcribe the page.",
        ]
    )
    assert parse_prompt_markdown(markdown) == PromptConfig(
        text_filter_system="Keep only narrative paragraphs.",
        vision_system="Transcribe the page.",
    )


def test_missing_section_is_configuration_error():
    with pytest.raises(ConfigurationError, match="Required sections"):
        parse_prompt_markdown("## text_filter_system\nKeep narrative paragraphs.\n")


def test_empty_section_is_configuration_error():
    with pytest.raises(ConfigurationError):
        parse_prompt_markdown("## text_filter_system\n```text\n```\n## vision_page_system\nx\n")
