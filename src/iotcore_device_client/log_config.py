"""
Apply log level from env.

Single log level for every logger in the process, read from IOTC_LOG_LEVEL
(a level name such as DEBUG or a number). Defaults to INFO.
"""

from __future__ import annotations

import logging
import os
from typing import Optional


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_env(raw: Optional[str] = None) -> int:
    """Resolve log level: explicit raw value, else IOTC_LOG_LEVEL env, else INFO."""
    if raw:
        return _parse_level(raw)
    return _parse_level(os.environ.get("IOTC_LOG_LEVEL", ""))


def apply_log_level(level: int) -> None:
    """Set root logger level so all loggers use this level."""
    logging.getLogger().setLevel(level)
