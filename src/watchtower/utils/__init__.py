"""Utility functions for watchtower."""

from watchtower.utils.logging import configure_logging, get_log_path
from watchtower.utils.project import find_repo_root

__all__ = ["configure_logging", "find_repo_root", "get_log_path"]
