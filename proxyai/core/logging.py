"""Logging configuration utilities for the API proxy."""
import logging
import os
import sys


def setup_logging(debug: bool = False) -> None:
    """Configure root logging; debug mode wins over the LOG_LEVEL environment variable."""
    level = "DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    # httpx logs every upstream request at INFO; the relay already does.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
