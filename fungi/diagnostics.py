"""Logging setup for the fungi daemon.

Every module logs under the ``fungi.*`` logger tree. The daemon calls
``setup_component_logging`` once at startup, which writes those records to
``~/.fungi/logs/<component>.log`` (or FUNGI_LOG_DIR) and mirrors them to stderr
unless FUNGI_LOG_TEE is switched off.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional


_TRUTHY = {"1", "true", "yes", "on"}
_CONFIGURED: Dict[str, Path] = {}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
ROOT_LOGGER = "fungi"


def debug_enabled() -> bool:
    """Return True when FUNGI_DEBUG is set to a truthy value."""
    return os.environ.get("FUNGI_DEBUG", "").strip().lower() in _TRUTHY


def tee_enabled() -> bool:
    return os.environ.get("FUNGI_LOG_TEE", "1").strip().lower() in _TRUTHY


def log_dir() -> Path:
    return Path(os.environ.get("FUNGI_LOG_DIR") or (Path.home() / ".fungi" / "logs"))


def log_exception(component: str, message: str, exc: BaseException) -> None:
    """Log an exception with traceback under the component's logger."""
    logging.getLogger(f"{ROOT_LOGGER}.{component}").error(
        "%s: %s", message, exc, exc_info=(type(exc), exc, exc.__traceback__)
    )


def setup_component_logging(component: str) -> Optional[Path]:
    """Attach file (and console) handlers for ``component`` to the fungi loggers.

    Returns the log file path, or None when the log file cannot be opened.
    Repeated calls for the same component return the same path without
    adding handlers.
    """
    if component in _CONFIGURED:
        return _CONFIGURED[component]

    target_dir = log_dir()
    log_file = target_dir / f"{component}.log"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8", errors="replace")
    except OSError:
        return None

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [file_handler]
    if tee_enabled():
        handlers.append(logging.StreamHandler(sys.stderr))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    _CONFIGURED[component] = log_file
    return log_file
