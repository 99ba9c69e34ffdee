from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")
logging.addLevelName(logging.WARNING, "WARN")

DEFAULT_LOGS_DIR = "logs"


def default_log_path(logs_dir: str = DEFAULT_LOGS_DIR) -> str:
    """One log file per run."""
    return str(Path(logs_dir) / time.strftime("ailinux-build-%Y%m%d-%H%M%S.log"))


def log_success(logger: logging.Logger, msg: str, *args: Any) -> None:
    logger.log(SUCCESS, msg, *args)


def configure_logging(
    log_path: Optional[str] = None,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging.

    All phase, recovery and cleanup decisions go to one line-oriented file
    per run (levels INFO, WARN, ERROR, SUCCESS, CRITICAL).

    Notes:
    - If the requested log location is not writable we fall back to a file
      in the current working directory and report the path actually used.

    Returns the actual file path being used.
    """

    log_path = log_path or default_log_path()

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_ailinux_configured", False):
        return getattr(logger, "_ailinux_log_path", log_path)

    chosen_path = log_path
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)
        chosen_path = log_path
    except OSError:
        # Fall back to a writable location.
        fallback = str(Path.cwd() / os.path.basename(log_path))
        file_handler = logging.FileHandler(fallback)
        file_handler.setFormatter(fmt)
        handlers.append(file_handler)
        chosen_path = fallback

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_ailinux_configured", True)
    setattr(logger, "_ailinux_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
