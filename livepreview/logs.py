"""Logging helpers.

Coarse categories can be switched on or off from the environment:
  LOG_ALL=0 disables every category unless explicitly enabled.
  LOG_WATCH, LOG_COMPILE, LOG_CLIENTS, LOG_HTTP override per category (1/0).
LOG_LEVEL picks the root level used by configure_logging (default INFO).
"""
from __future__ import annotations

import logging
import os

LOGGER_NAME = "livepreview"
_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def _log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def get_logger(cat: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{cat}")


def _log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category.

    Warnings and errors are always emitted; the category gate only
    silences routine INFO/DEBUG chatter.
    """
    if level < logging.WARNING and not _log_enabled(cat):
        return
    get_logger(cat).log(level, "%s", msg)


def configure_logging(level: str | None = None) -> None:
    """Install a stderr handler once. Safe to call repeatedly."""
    global _configured
    if _configured:
        return
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=_FORMAT)
    _configured = True
