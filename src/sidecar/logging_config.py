"""Centralized logging configuration for sidecar."""

import logging
import os
from typing import Optional

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_configured = False


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
) -> None:
    """Configure the sidecar logger tree with level and output destination.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file.
        console: Attach a stderr handler. The full-screen UI disables this so
            log lines never land on top of the rendered screen.
    """
    global _configured
    if _configured:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    env_level = os.getenv("SIDECAR_LOG_LEVEL")
    if env_level:
        log_level = getattr(logging, env_level.upper(), log_level)

    env_file = os.getenv("SIDECAR_LOG_FILE")
    if env_file is not None:
        log_file = env_file

    root = logging.getLogger("sidecar")
    root.setLevel(log_level)
    root.handlers.clear()
    root.propagate = False

    formatter = logging.Formatter(_LOG_FORMAT)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError:
            if console:
                root.warning("Could not open log file %s, logging to stderr only", log_file)

    if not root.handlers:
        root.addHandler(logging.NullHandler())

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module-scoped logger.

    Args:
        name: Logger name, typically __name__ of the calling module.

    Returns:
        Logger instance.
    """
    if name.startswith("sidecar.") or name == "sidecar":
        return logging.getLogger(name)
    return logging.getLogger(f"sidecar.{name}")
