"""Logging configuration for envsnap.

Console output goes through rich; an optional log file receives every record
at debug level in a plain format that is easy to grep after a long restore.

Example:
    ```python
    from envsnap.core.logging import setup_logging

    setup_logging(debug=True, log_file="~/.envsnap/envsnap.log")
    ```
"""

import logging
import sys
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"

# Shared console; progress bars and log lines must not interleave
console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _console_handler(debug: bool) -> logging.Handler:
    handler = RichHandler(
        console=console,
        show_path=debug,
        enable_link_path=debug,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=debug,
    )
    # Restore lanes report through the results table, not the log
    handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    return handler


def _file_handler(log_file: str, log_format: str) -> logging.Handler:
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(log_format))
    return handler


def _log_uncaught(
    exc_type: Type[BaseException],
    exc_value: BaseException,
    exc_traceback: Optional[TracebackType],
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


def setup_logging(
    debug: bool = False,
    log_file: Optional[str] = None,
    log_format: str = FILE_FORMAT,
) -> None:
    """Set up logging configuration.

    Args:
        debug: Whether to show debug records on the console.
        log_file: Optional path to a log file that receives every record.
            ``~`` is expanded and missing parent directories are created.
        log_format: Format string for the log file. The default includes the
            thread name so records of concurrent restore lanes can be told apart.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_console_handler(debug))
    if log_file:
        root.addHandler(_file_handler(log_file, log_format))
    root.setLevel(logging.DEBUG if debug or log_file else logging.INFO)

    logger.debug("Logging initialized (debug=%s, log_file=%s)", debug, log_file)
    sys.excepthook = _log_uncaught
