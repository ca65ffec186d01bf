"""
One-shot branch commands: status, switch, pull, undo.

Each command builds a session, primes it with one listing of the refs, runs
its operation and exits. Switch and pull go through the same stash-recovery
workflow as the dashboard, with ``typer.confirm`` as the prompt.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from watchtower.cli.errors import ExitCode, print_error, print_git_error
from watchtower.cli.startup import open_session
from watchtower.core.actions import ActionResult, BranchActions
from watchtower.core.polling import PollLoop
from watchtower.core.polling.engine import is_merged
from watchtower.core.recovery import RecoveryOutcome
from watchtower.core.session import WatchSession
from watchtower.dashboard.renderer import format_age

console = Console()


def _option_debug(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("debug"))


async def _primed_session(ctx: typer.Context) -> WatchSession:
    session = await open_session(debug=_option_debug(ctx), cwd=Path.cwd())
    await PollLoop(session).prime()
    return session


def _print_branch_table(session: WatchSession) -> None:
    state = session.store.get_state()
    table = Table(title=f"{state['project_name']} on {state['current_branch']}")
    table.add_column("", width=1)
    table.add_column("Branch", style="cyan", no_wrap=True)
    table.add_column("Commit", style="dim")
    table.add_column("Subject")
    table.add_column("Updated", style="dim", justify="right")

    for branch in state["branches"]:
        if branch.name == state["current_branch"]:
            marker = "[green]★[/green]"
        elif branch.is_deleted:
            marker = "[red]✗[/red]"
        elif is_merged(branch, state["branch_pr_status_map"]):
            marker = "[magenta]⇢[/magenta]"
        elif branch.has_updates:
            marker = "[yellow]↓[/yellow]"
        else:
            marker = ""
        table.add_row(marker, branch.name, branch.commit, branch.subject, format_age(branch.date))

    console.print(table)
    if state["is_offline"]:
        console.print("[red]Offline:[/red] the remote could not be reached")
    if state["has_merge_conflict"]:
        console.print("[red]Merge conflict:[/red] resolve it before pulling again")


async def _resolve_dirty(actions: BranchActions) -> bool:
    """Offer the stash workflow for a parked operation. Returns success."""
    prompt = actions.session.store.get("stash_confirm")
    message = prompt.message if prompt is not None else "Stash local changes and retry?"
    if not typer.confirm(message, default=False):
        actions.recovery.cancel()
        console.print("[dim]Cancelled; working tree untouched[/dim]")
        return False

    outcome = await actions.recovery.confirm()
    if outcome is RecoveryOutcome.RETRIED:
        console.print("[green]Done.[/green] Your changes are in the stash (git stash pop to restore)")
        return True
    if outcome is RecoveryOutcome.RESTORED:
        print_error(
            "Operation failed after stashing",
            reason="Your changes were restored from the stash",
        )
    elif outcome is RecoveryOutcome.POP_FAILED:
        print_error(
            "Operation failed and the stash could not be restored",
            reason=actions.session.store.get("stash_warning"),
            solution="git stash pop",
        )
    elif outcome is RecoveryOutcome.STASH_FAILED:
        print_error("Could not stash local changes", solution="git stash")
    return False


async def _finish(actions: BranchActions, result: ActionResult, problem: str) -> bool:
    if result.success:
        return True
    if result.needs_stash:
        return await _resolve_dirty(actions)
    if result.error is not None:
        print_git_error(problem, result.error)
    else:
        flash = actions.session.store.get("flash_message")
        print_error(problem, reason=flash.text if flash is not None else None)
    return False


def status(ctx: typer.Context) -> None:
    """
    Run one poll cycle and print the branch list.
    """

    async def _run() -> None:
        session = await _primed_session(ctx)
        await PollLoop(session).poll_once()
        _print_branch_table(session)

    asyncio.run(_run())


def switch(
    ctx: typer.Context,
    branch: str = typer.Argument(..., help="Branch to check out"),
) -> None:
    """
    Switch to a branch, creating a tracking branch from the remote if needed.

    If local changes block the switch, offers to stash them and retry.
    """

    async def _run() -> bool:
        session = await _primed_session(ctx)
        actions = BranchActions(session)
        result = await actions.switch_to_branch(branch)
        ok = await _finish(actions, result, f"Could not switch to {branch}")
        if ok:
            console.print(f"[green]On {session.store.get('current_branch')}[/green]")
        return ok

    if not asyncio.run(_run()):
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def pull(ctx: typer.Context) -> None:
    """
    Pull the current branch from the watched remote.
    """

    async def _run() -> bool:
        session = await _primed_session(ctx)
        actions = BranchActions(session)
        result = await actions.pull_current_branch()
        ok = await _finish(actions, result, "Pull failed")
        if ok:
            console.print(f"[green]Pulled {session.store.get('current_branch')}[/green]")
        return ok

    if not asyncio.run(_run()):
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def undo(ctx: typer.Context) -> None:
    """
    Switch back to the previously checked-out branch.
    """

    async def _run() -> bool:
        session = await _primed_session(ctx)
        store = session.store
        previous = await session.runner.previous_branch()
        current = store.get("current_branch")
        if previous is None or current is None:
            print_error("No previous branch to return to")
            return False
        store.add_to_history(previous, current)

        actions = BranchActions(session)
        result = await actions.undo_last_switch()
        ok = await _finish(actions, result, f"Could not switch back to {previous}")
        if ok:
            console.print(f"[green]Back on {previous}[/green]")
        return ok

    if not asyncio.run(_run()):
        raise typer.Exit(ExitCode.GENERAL_ERROR)
