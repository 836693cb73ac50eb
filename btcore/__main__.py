"""Allow ``python -m btcore``."""

from __future__ import annotations

from btcore.cli.main import main

if __name__ == "__main__":
    main()
