from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

_LOGGING_CONFIGURED = False


def setup_logging(
    filename: str | Path | None = None,
    level: int = logging.INFO,
    *,
    force: bool = False,
) -> structlog.BoundLogger:
    """Set up structured logging for the dir2txt package.

    The first call configures the stdlib root handler and structlog; later calls
    return the same logger unless ``force`` is set (used by the CLI when a log
    file or a quieter level is requested).

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.
        level: Minimum level emitted by the dir2txt logger.
        force: Reconfigure even if logging was already set up.

    Returns:
        A structlog logger instance configured for the dir2txt package.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if not _LOGGING_CONFIGURED or force:
        handlers: list[logging.Handler] = []
        if filename:
            handlers.append(logging.FileHandler(str(filename), encoding="utf-8"))
        else:
            handlers.append(logging.StreamHandler(sys.stderr))

        logging.basicConfig(
            level=level,
            handlers=handlers,
            format="%(message)s",
            force=force,
        )
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )
        _LOGGING_CONFIGURED = True

    return structlog.get_logger("dir2txt")


logger = setup_logging()
