"""Entry point for `python -m graph_memory` and the `graph-memory` script."""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv
from pydantic import ValidationError


def main() -> None:
    # Load .env before settings are built.
    load_dotenv("config/.env")
    load_dotenv()

    from graph_memory.config import get_settings
    from graph_memory.cli import main as cli_main

    try:
        level = get_settings().LOG_LEVEL.upper()
    except ValidationError:
        # Reported by the CLI.
        level = "INFO"
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    sys.exit(cli_main())


if __name__ == "__main__":
    main()
