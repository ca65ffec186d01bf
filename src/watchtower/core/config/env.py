"""
.env file support.

Only watchtower's own ``WATCHTOWER_*`` variables and the tokens the gh and
glab CLIs read are taken from .env files; anything else in a project's .env
belongs to the project and is left alone.

Layers, lowest first: user .env, project .env, project .env.local. The
merged result never replaces a variable already exported in the shell.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_PREFIX = "WATCHTOWER_"

CLI_TOKEN_KEYS = frozenset({"GH_TOKEN", "GITHUB_TOKEN", "GH_HOST", "GITLAB_TOKEN", "GITLAB_HOST"})


def is_watchtower_key(key: str) -> bool:
    return key.startswith(ENV_PREFIX) or key in CLI_TOKEN_KEYS


def get_user_env_path() -> Path:
    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_home) if xdg_home else Path.home() / ".config"
    return base / "watchtower" / ".env"


def read_env_file(path: Path) -> dict[str, str]:
    """
    The watchtower-relevant assignments of one .env file.

    Missing files and valueless keys (``KEY`` with no ``=``) contribute
    nothing.
    """
    if not path.is_file():
        return {}
    return {
        key: value
        for key, value in dotenv_values(path).items()
        if value is not None and is_watchtower_key(key)
    }


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> set[str]:
    """
    Export .env values into ``os.environ``.

    Args:
        project_dir: Repository root (defaults to cwd)
        user_env_paths: User-level files, lowest precedence
        project_env_paths: Project files, later files win

    Returns:
        Names of the variables that were set
    """
    project_dir = project_dir or Path.cwd()
    if user_env_paths is None:
        user_env_paths = [get_user_env_path()]
    if project_env_paths is None:
        project_env_paths = [project_dir / ".env", project_dir / ".env.local"]

    merged: dict[str, str] = {}
    for path in [*user_env_paths, *project_env_paths]:
        merged.update(read_env_file(Path(path)))

    applied = {key for key in merged if key not in os.environ}
    for key in applied:
        os.environ[key] = merged[key]

    if applied:
        logger.debug(f"Loaded from .env files: {', '.join(sorted(applied))}")
    return applied
