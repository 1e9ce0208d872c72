"""Console and rotating file logging."""

from __future__ import annotations

import logging
import sys
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path

from naksu.constants import FILE_PERMISSIONS_OWNER_RWX

_MAX_BACKUPS = 5
_MAX_LOG_SIZE_BYTES = 10 * 1024 * 1024
_LOG_FILENAME = "naksu_lastlog.txt"

_is_debug = False
_debug_filename = ""
_handler: logging.Handler | None = None

_file_logger = logging.getLogger("naksu.debuglog")
_file_logger.propagate = False
_file_logger.setLevel(logging.DEBUG)


def _exists_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def set_debug(new_value: bool) -> None:
    """Enable or disable printing of debug messages."""
    global _is_debug
    _is_debug = bool(new_value)


def set_debug_filename(new_filename: str) -> None:
    """Set the log file; "-" logs to standard error, "" stops file logging."""
    global _debug_filename, _handler
    _debug_filename = str(new_filename)

    if _handler is not None:
        _file_logger.removeHandler(_handler)
        try:
            _handler.close()
        except OSError as exc:
            sys.stderr.write(f"Could not close log file: {exc}")
        _handler = None

    if not _debug_filename:
        return

    if _debug_filename == "-":
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
    else:
        handler = RotatingFileHandler(
            _debug_filename,
            maxBytes=_MAX_LOG_SIZE_BYTES,
            backupCount=_MAX_BACKUPS,
            encoding="utf-8",
        )
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S"))
    _file_logger.addHandler(handler)
    _handler = handler


def get_new_debug_filename() -> str:
    """Suggest a log file path: ~/ktp/naksu_lastlog.txt, or one in the temp directory."""
    ktp_dir = Path.home() / "ktp"

    if not _exists_dir(ktp_dir):
        try:
            ktp_dir.mkdir(mode=FILE_PERMISSIONS_OWNER_RWX)
        except OSError as exc:
            print(f"Warning: get_new_debug_filename() could not create directory '{ktp_dir}': {exc}")

    if _exists_dir(ktp_dir):
        return str(ktp_dir / _LOG_FILENAME)
    return str(Path(tempfile.gettempdir()) / _LOG_FILENAME)


def is_debug() -> bool:
    """Return True if debug messages are printed."""
    return _is_debug


def _write(prefix: str, message: str, args: tuple) -> None:
    formatted = message % args if args else message
    if prefix != "DEBUG" or _is_debug:
        print(f"{prefix}: {formatted}")
    if _debug_filename and _handler is not None:
        _file_logger.info("%s: %s", prefix, formatted)


def debug(message: str, *args) -> None:
    """Log debug information."""
    _write("DEBUG", message, args)


def error(message: str, *args) -> None:
    """Log an error."""
    _write("ERROR", message, args)


def warning(message: str, *args) -> None:
    """Log a warning."""
    _write("WARNING", message, args)


def info(message: str, *args) -> None:
    """Log an informational message."""
    _write("INFO", message, args)


def action(message: str, *args) -> None:
    """Log a user action."""
    _write("ACTION", message, args)