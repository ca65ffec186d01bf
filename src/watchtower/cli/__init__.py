"""
watchtower CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import asyncio

import typer
from rich.console import Console

from watchtower import __version__
from watchtower.cli import branch
from watchtower.cli.dashboard import run_dashboard
from watchtower.cli.errors import ExitCode
from watchtower.cli.startup import open_session

app = typer.Typer(
    name="watchtower",
    help="Watch a repository's remote branches from the terminal",
    no_args_is_help=False,
    invoke_without_command=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"git-watchtower {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    remote: str | None = typer.Option(
        None,
        "--remote",
        "-r",
        help="Remote to watch (default: remoteName from config, else origin)",
    ),
    poll_interval: int | None = typer.Option(
        None,
        "--poll-interval",
        "-i",
        help="Baseline poll interval in milliseconds",
    ),
    no_auto_pull: bool = typer.Option(
        False,
        "--no-auto-pull",
        help="Never pull the current branch automatically",
    ),
    command: str | None = typer.Option(
        None,
        "--command",
        "-c",
        help='Supervise a dev-server command, e.g. "npm run dev"',
    ),
    no_server: bool = typer.Option(
        False,
        "--no-server",
        help="Run without a dev server",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    """
    git-watchtower - live view of a repository's branches.

    When run without a subcommand, watchtower polls the remote, shows new,
    updated and deleted branches as they happen, auto-pulls the current
    branch, and optionally keeps a dev server running across switches.

    Examples:
        watchtower                          # Watch origin
        watchtower --remote upstream        # Watch another remote
        watchtower -c "npm run dev"         # Supervise a dev server
        watchtower status                   # One-shot branch list
        watchtower switch feature/login     # Switch, offering to stash
    """
    ctx.obj = {"debug": debug}

    if ctx.invoked_subcommand is not None:
        return

    async def _run() -> int:
        session = await open_session(
            debug=debug,
            remote=remote,
            poll_interval=poll_interval,
            no_auto_pull=no_auto_pull,
            command=command,
            no_server=no_server,
        )
        return await run_dashboard(session)

    code = asyncio.run(_run())
    raise typer.Exit(code)


app.command(name="status")(branch.status)
app.command(name="switch")(branch.switch)
app.command(name="pull")(branch.pull)
app.command(name="undo")(branch.undo)


__all__ = ["ExitCode", "app"]
