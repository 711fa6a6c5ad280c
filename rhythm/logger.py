"""
Logging

All scheduler loggers live under the ``rhythm`` namespace and share the
handlers of that one package logger: stdout and/or a size-rotated file.

The package logger is configured on first use. A call that carries a config
reconfigures it once, so module-level loggers created at import time pick up
the real settings when the entry point loads its config.
"""

import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "rhythm"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_lock = threading.Lock()
_configured = False
_configured_from_config = False


def configure_logging(config=None) -> logging.Logger:
    """(Re)build the handlers of the package logger from config."""
    get = config.get if config else (lambda key, default=None: default)
    level_str = get("logging.level", "INFO")
    log_file = get("logging.file")
    console_enabled = get("logging.console", True)
    max_bytes = get("logging.max_bytes", 1_000_000)
    backup_count = get("logging.backup_count", 3)

    # Daemon mode: keep stdout clean, everything goes to logs/rhythm.log
    if os.environ.get("RHYTHM_LOG_FILE_ONLY"):
        console_enabled = False
        log_file = str(Path(__file__).parent.parent / "logs" / "rhythm.log")

    level = getattr(logging, str(level_str).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)

    if console_enabled:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        rotating.setFormatter(formatter)
        root.addHandler(rotating)

    if not root.handlers:
        root.addHandler(logging.NullHandler())

    root.propagate = False
    return root


def get_logger(name: str, config=None) -> logging.Logger:
    """Logger for a module or component, e.g. ``get_logger(__name__, config)``.

    Names outside the package (class names, script names) are nested under
    ``rhythm.`` so they share its handlers.
    """
    global _configured, _configured_from_config
    with _lock:
        if not _configured or (config is not None and not _configured_from_config):
            configure_logging(config)
            _configured = True
            _configured_from_config = config is not None

    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
