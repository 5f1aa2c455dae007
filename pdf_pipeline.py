"""CLI shim -- delegates to pdf2csv.cli.main().

Usage:
    python pdf_pipeline.py run ./pdfs --model gpt-4.1-mini
    python pdf_pipeline.py batch status --wait
"""

from pdf2csv.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
