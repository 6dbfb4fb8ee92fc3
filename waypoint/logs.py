"""Console and per-run file logging."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_RUN_HANDLER_ATTR = "_waypoint_run_log"


def configure_logging(level: str = "INFO") -> None:
    """Set up console logging for command line use."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger("waypoint").setLevel(level.upper())


def _slug(title: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_")
    return slug or "workflow"


def open_run_log(
    title: str, directory: str | Path, previous: Optional[str] = None
) -> Path:
    """Attach a file handler that records one workflow run.

    Any run log opened earlier in this process is closed first. When resuming
    after a reboot ``previous`` names the log file of the interrupted run and
    is noted at the top of the new file.
    """

    close_run_log()
    directory = Path(directory).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = directory / f"{_slug(title)}_{stamp}.log"

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(handler, _RUN_HANDLER_ATTR, True)

    package_logger = logging.getLogger("waypoint")
    package_logger.addHandler(handler)
    if package_logger.getEffectiveLevel() > logging.INFO:
        package_logger.setLevel(logging.INFO)

    log = logging.getLogger(__name__)
    log.info(f"Workflow: {title}")
    if previous:
        log.info(f"Continuing from previous run, log: {previous}")
    return path


def close_run_log() -> None:
    package_logger = logging.getLogger("waypoint")
    for handler in list(package_logger.handlers):
        if getattr(handler, _RUN_HANDLER_ATTR, False):
            package_logger.removeHandler(handler)
            handler.close()
