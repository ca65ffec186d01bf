"""
Log file setup.

The dashboard owns the terminal, so log records go to a per-project file:
``$XDG_DATA_HOME/watchtower/logs/<project>.log`` (default
``~/.local/share/watchtower/logs/``).
"""

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_xdg_data_home() -> Path:
    if xdg_home := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg_home)
    return Path.home() / ".local" / "share"


def get_log_path(project: str) -> Path:
    """
    Path of the log file for a project.

    Raises:
        ValueError: If project is empty
    """
    if not project or not project.strip():
        raise ValueError("project name must be non-empty")
    return get_xdg_data_home() / "watchtower" / "logs" / f"{project.strip()}.log"


def configure_logging(project: str, debug: bool = False) -> Path:
    """
    Route watchtower's log records to the project's log file.

    Args:
        project: Project (repository directory) name
        debug: If True, log at DEBUG level instead of INFO

    Returns:
        Path of the log file

    Raises:
        ValueError: If project is empty
    """
    path = get_log_path(project)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("watchtower")
    for existing in list(root.handlers):
        if isinstance(existing, logging.FileHandler):
            root.removeHandler(existing)
            existing.close()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False
    return path
