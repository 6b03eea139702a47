"""Logging configuration for the PWMS backend.

Messages are pipe-delimited so they stay greppable in platform log viewers:

    SYNC | manual | synced=3 failed=0 | ...
    CHANGE | quality | B-100 | web | 1760868000000-3fa85f64a
"""

import logging
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def configure_logging(debug: bool = False) -> None:
    """Install a stdout handler on the ``pwms`` logger once."""
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("pwms")
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``pwms`` namespace."""
    if not name.startswith("pwms"):
        name = f"pwms.{name}"
    return logging.getLogger(name)


_sync_logger = get_logger("pwms.sync")


def log_sync_result(trigger: str, synced: int, failed: int, message: str | None = None) -> None:
    """Log the outcome of one drain cycle."""
    level = logging.INFO if not failed else logging.WARNING
    _sync_logger.log(level, f"SYNC | {trigger} | synced={synced} failed={failed} | {message or ''}")


def log_change_event(kind: str, batch_number: str, source: str, change_id: str) -> None:
    """Log one change registered in the change log."""
    _sync_logger.info(f"CHANGE | {kind} | {batch_number} | {source} | {change_id}")
