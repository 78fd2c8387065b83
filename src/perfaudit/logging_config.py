"""Logging setup for the perfaudit CLI and embedding services."""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from perfaudit.config import settings

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Admission decisions are logged per request; keep them out of INFO output
# unless asked for explicitly.
DEFAULT_LOGGER_LEVELS = {
    'asyncio': logging.WARNING,
    'perfaudit.infrastructure.job_queue': logging.WARNING,
}


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format_string: str = DEFAULT_FORMAT,
    logger_levels: Optional[Dict[str, int]] = None,
) -> None:
    """Configure root logging.

    Console output goes to stderr so that JSON written to stdout stays
    parseable.

    Args:
        level: Root log level name; defaults to LOG_LEVEL from the environment
        log_file: Also append log records to this file
        format_string: logging format for every handler
        logger_levels: Per-logger level overrides, merged over the defaults
    """
    numeric_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=numeric_level,
        format=format_string,
        handlers=handlers,
        force=True,
    )

    overrides = dict(DEFAULT_LOGGER_LEVELS)
    overrides.update(logger_levels or {})
    for name, logger_level in overrides.items():
        if numeric_level <= logging.DEBUG:
            logger_level = numeric_level
        logging.getLogger(name).setLevel(max(logger_level, numeric_level))
