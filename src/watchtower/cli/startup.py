"""
Shared startup for CLI commands.

Every command goes through the same steps before touching git: load .env
layers, load and override config, locate the repository, check git and the
remote, and point logging at the project's log file.
"""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from watchtower.cli.errors import (
    ExitCode,
    print_error,
    print_git_not_found_error,
    print_not_git_repo_error,
    print_remote_not_found_error,
)
from watchtower.core.config import load_config, load_layered_env
from watchtower.core.config.loader import validate_config
from watchtower.core.config.models import WatchtowerConfig
from watchtower.core.errors import ConfigError
from watchtower.core.git.commands import GitRunner
from watchtower.core.session import WatchSession
from watchtower.utils import configure_logging, find_repo_root

logger = logging.getLogger(__name__)


def apply_cli_overrides(
    config: WatchtowerConfig,
    *,
    remote: str | None = None,
    poll_interval: int | None = None,
    no_auto_pull: bool = False,
    command: str | None = None,
    no_server: bool = False,
) -> WatchtowerConfig:
    """
    Layer command-line flags on top of the loaded config.

    Flags win over every file and environment layer. The result is validated
    again so a bad flag fails the same way a bad file does.

    Raises:
        ConfigError: If the overridden config is invalid
    """
    data = config.to_file_dict()
    server = dict(data["server"])  # type: ignore[call-overload]
    if remote is not None:
        data["remoteName"] = remote
    if poll_interval is not None:
        data["gitPollInterval"] = poll_interval
    if no_auto_pull:
        data["autoPull"] = False
    if command is not None:
        server["command"] = command
        server["mode"] = "command"
    if no_server:
        server["mode"] = "none"
    data["server"] = server

    return validate_config(data)


async def _check_repository(runner: GitRunner, remote: str) -> None:
    if not await runner.is_available():
        print_git_not_found_error()
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    if not await runner.is_repository():
        print_not_git_repo_error()
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    remotes = await runner.get_remotes()
    if remotes and remote not in remotes:
        print_remote_not_found_error(remote, remotes)
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    if not remotes:
        logger.warning("No remotes configured; watching local branches only")


async def open_session(
    *,
    debug: bool = False,
    remote: str | None = None,
    poll_interval: int | None = None,
    no_auto_pull: bool = False,
    command: str | None = None,
    no_server: bool = False,
    cwd: Path | None = None,
) -> WatchSession:
    """
    Build a WatchSession for the repository containing ``cwd``.

    Raises:
        typer.Exit: With GENERAL_ERROR on config, git or repository problems
    """
    start = cwd or Path.cwd()
    repo_root = find_repo_root(start)
    if repo_root is None:
        print_not_git_repo_error()
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    load_layered_env(project_dir=repo_root)
    try:
        config = apply_cli_overrides(
            load_config(repo_root, use_cache=False),
            remote=remote,
            poll_interval=poll_interval,
            no_auto_pull=no_auto_pull,
            command=command,
            no_server=no_server,
        )
    except ConfigError as e:
        print_error(e.message, reason="Check .watchtowerrc.json and WATCHTOWER_* variables")
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e

    if config.server.mode == "command" and not config.server.command.strip():
        print_error(
            "Server mode is 'command' but no command is configured",
            solution='watchtower --command "npm run dev"',
        )
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    log_path = configure_logging(repo_root.name, debug=debug)
    logger.info(f"Starting watchtower in {repo_root} (log: {log_path})")

    session = WatchSession.init(config, repo_root, debug=debug)
    await _check_repository(session.runner, config.remote_name)
    return session
