"""File logging for chatcore.

Every logger lives under the ``chatcore`` namespace and writes to
``<workspace>/.chatcore_output/chatcore.log``. Until a workspace is known
the current directory is used; calling :func:`init_logging` with a
workspace later moves the file handler there.

    from .logger import get_logger
    _log = get_logger("channel")
    _log.info("request: url=%s model=%s", url, model)

Set ``CHATCORE_DEBUG`` to mirror records to stderr.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_DIR_NAME = ".chatcore_output"
LOG_FILE_NAME = "chatcore.log"
ROOT_LOGGER = "chatcore"

_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_file_handler: Optional[RotatingFileHandler] = None
_session_id: Optional[str] = None


def _open_file_handler(log_dir: Path, level: int) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_dir / LOG_FILE_NAME),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    return handler


def init_logging(
    workspace: Optional[str] = None,
    session_id: Optional[str] = None,
    level: int = logging.DEBUG,
) -> None:
    """Attach (or re-point) the rotating file handler.

    Repeated calls are cheap. A call naming a different workspace than the
    one currently logged to swaps the handler over.
    """
    global _file_handler, _session_id

    if session_id is not None:
        _session_id = session_id

    log_dir = Path(workspace or Path.cwd()) / LOG_DIR_NAME
    target = str(log_dir / LOG_FILE_NAME)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)

    if _file_handler is not None:
        if os.path.abspath(_file_handler.baseFilename) == os.path.abspath(target):
            return
        root.removeHandler(_file_handler)
        _file_handler.close()

    _file_handler = _open_file_handler(log_dir, level)
    root.addHandler(_file_handler)

    if os.environ.get("CHATCORE_DEBUG") and not any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    ):
        echo = logging.StreamHandler(sys.stderr)
        echo.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
        root.addHandler(echo)

    root.info("logging to %s (pid=%d python=%s session=%s)",
              target, os.getpid(), sys.version.split()[0], _session_id or "-")


def get_logger(name: str) -> logging.Logger:
    """Return ``chatcore.<name>``, opening the default log file on first use."""
    if _file_handler is None:
        init_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log ``msg`` with the exception's full traceback."""
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error("%s: %s\n%s", msg, exc, tb)


def truncate(text: str, max_len: int = 200) -> str:
    """Single-line, length-capped rendering of ``text`` for log lines."""
    if not text:
        return "(empty)"
    flat = text.replace("\n", "\\n")
    if len(flat) > max_len:
        return f"{flat[:max_len]}...[{len(flat)} chars]"
    return flat
