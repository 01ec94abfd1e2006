from __future__ import annotations

import logging
import os

# ------------------------------------------------------------
# Logging categories (coarse grained, opt-in / opt-out)
#   Set LOG_ALL=0 to disable all unless explicitly enabled.
#   Per-category env vars override: LOG_SCAN, LOG_LEDGER, LOG_ACTIONS,
#   LOG_FFMPEG, LOG_VISION, LOG_BATCH. Values: 1 enable, 0 disable.
# ------------------------------------------------------------

_LOGGER = logging.getLogger("camreview")


def log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def log(cat: str, msg: str, *args) -> None:
    """Emit an informational line for a category through the logging pipeline."""
    if not log_enabled(cat):
        return
    _LOGGER.info("[%s] " + msg, cat, *args)


def configure_logging(level: str | None = None) -> None:
    lvl = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, lvl, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
