"""Logging setup for rkvbench.

Console output goes to stderr at a level picked by ``--verbose`` or
``--quiet``.  An optional file handler always records DEBUG so that a
failed benchmark run can be inspected after the fact.

Every record passing through these handlers is stamped with the current
run id and pipeline stage (``run_id`` and ``stage`` attributes), which the
pipeline updates as it moves between states.  A log file shared by many
nightly runs can then be split per run with ``grep``.
"""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "rkvbench"
_NO_CONTEXT = "-"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(run_id)s %(stage)s] %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(levelname)-8s %(message)s"
_VERBOSE_CONSOLE_FORMAT = "%(levelname)-8s [%(stage)s] %(message)s"


class RunContextFilter(logging.Filter):
    """Adds ``run_id`` and ``stage`` to every record it sees."""

    def __init__(self) -> None:
        super().__init__()
        self.run_id = _NO_CONTEXT
        self.stage = _NO_CONTEXT

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        record.stage = self.stage
        return True


_context = RunContextFilter()


def set_run_context(*, run_id: str | None = None, stage: str | None = None) -> None:
    """Update the run id and/or stage stamped on subsequent records."""
    if run_id is not None:
        _context.run_id = run_id or _NO_CONTEXT
    if stage is not None:
        _context.stage = stage or _NO_CONTEXT


def clear_run_context() -> None:
    _context.run_id = _NO_CONTEXT
    _context.stage = _NO_CONTEXT


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the root rkvbench logger.

    Args:
        verbose: Console at DEBUG, with the pipeline stage in each line.
        quiet: Console at WARNING. Ignored if *verbose* is True.
        log_file: If provided, also log at DEBUG to this path, creating
            its parent directory.  File lines carry run id and stage.

    Returns:
        The configured root logger for rkvbench.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    console = logging.StreamHandler()
    console.addFilter(_context)
    if verbose:
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(_VERBOSE_CONSOLE_FORMAT))
    else:
        console.setLevel(logging.WARNING if quiet else logging.INFO)
        console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.addFilter(_context)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(fh)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``rkvbench`` namespace."""
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")
