"""Allow ``python -m pdf2csv``."""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
