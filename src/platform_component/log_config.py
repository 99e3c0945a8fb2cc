"""
Log level and format for the runtime.

Single log level for the whole process, taken from PC_LOG_LEVEL (a level
name or number), INFO when unset.
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def level_from_env() -> int:
    return _parse_level(os.environ.get("PC_LOG_LEVEL", ""))


def configure_logging() -> None:
    """Install the default console handler and apply the env level to the root logger."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level_from_env())
