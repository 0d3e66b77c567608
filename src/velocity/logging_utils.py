"""Log files for model installer runs.

Every CLI invocation appends to ``<log dir>/model_installer.log``. Each install
or import also writes ``<log dir>/installs/<model-id>.log`` holding the full
debug trail of its most recent attempt, so a failed download can be read on
its own without digging through the session log.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

__all__ = ["configure_logging", "log_directory", "operation_log"]

INSTALLER_LOGGER = "velocity.model_installer"
SESSION_LOG_NAME = "model_installer.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_SESSION_HANDLER_FLAG = "_velocity_session_handler"


def log_directory(models_root: Optional[Path] = None) -> Path:
    """``VELOCITY_LOG_DIR`` when set, else a hidden ``.logs`` under the models root."""
    env_override = os.environ.get("VELOCITY_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    if models_root is not None:
        return Path(models_root).expanduser() / ".logs"
    return Path.cwd() / "logs"


def _formatter() -> logging.Formatter:
    return logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)


def _detach_session_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _SESSION_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def configure_logging(*, verbose: bool = False, log_dir: Optional[Path] = None) -> Path:
    """Install the session log and console handlers on the root logger.

    The session file records INFO and above (DEBUG with ``verbose``). The
    console only shows warnings unless ``verbose`` is set, so progress bars
    are not interleaved with stage chatter. Calling it again replaces the
    handlers from the previous call.
    """
    directory = Path(log_dir).expanduser() if log_dir else log_directory()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / SESSION_LOG_NAME
    level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _detach_session_handlers(root_logger)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(_formatter())

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(_formatter())

    for handler in (file_handler, console_handler):
        setattr(handler, _SESSION_HANDLER_FLAG, True)
        root_logger.addHandler(handler)

    logging.captureWarnings(True)
    return log_path


def operation_log_path(model_id: str, log_dir: Path) -> Path:
    name = model_id.replace("/", "_").replace("\\", "_") or "unnamed"
    return Path(log_dir).expanduser() / "installs" / f"{name}.log"


@contextmanager
def operation_log(model_id: str, log_dir: Path) -> Iterator[Path]:
    """Capture installer debug output for one install or import.

    The installer logger is lowered to DEBUG for the duration of the block;
    session handlers keep their own levels so they are unaffected.
    """
    path = operation_log_path(model_id, log_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter())

    logger = logging.getLogger(INSTALLER_LOGGER)
    previous_level = logger.level
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    try:
        yield path
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)
        handler.close()
