from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_CONFIGURED_MARKER = "_openplane_handler"


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: str | int = "INFO",
    log_file: Path | None = None,
    *,
    also_console: bool = True,
    stream=None,
) -> None:
    """Install the openplane handlers on the ``openplane`` logger.

    Calling this again replaces the handlers installed by a previous call, so
    it is safe to call from every CLI entry point.
    """
    root = logging.getLogger("openplane")
    root.setLevel(_resolve_level(level))
    for handler in list(root.handlers):
        if getattr(handler, _CONFIGURED_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError:
            # Fall back to console output when the log file cannot be opened.
            also_console = True

    if also_console:
        handlers.append(logging.StreamHandler(stream or sys.stderr))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _CONFIGURED_MARKER, True)
        root.addHandler(handler)
