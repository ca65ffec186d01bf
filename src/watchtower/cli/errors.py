"""
Standardized error output and exit codes for the watchtower CLI.
"""

from enum import IntEnum

from rich.console import Console

from watchtower.core.errors import GitError
from watchtower.core.git.classifier import remediation_hint

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Exit codes for watchtower CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Operational failure (git, config, server)."""

    SIGINT = 130
    """Forced exit on a second interrupt - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Example:
        >>> print_error(
        ...     "Cannot switch branches",
        ...     reason="Your local changes would be overwritten",
        ...     solution="git stash",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_git_error(problem: str, error: GitError) -> None:
    """Print a classified git failure with its remediation hint."""
    print_error(problem, reason=error.to_user_message(), solution=_solution(error))


def _solution(error: GitError) -> str | None:
    hint = remediation_hint(error.category)
    if hint.startswith("Run: "):
        return hint[len("Run: ") :]
    return hint


def print_not_git_repo_error() -> None:
    """Print error when not in a git repository."""
    print_error(
        "Not a git repository",
        reason="watchtower watches the branches of a git repository",
        solution="cd to your repository root",
    )


def print_git_not_found_error() -> None:
    print_error(
        "git is not installed or not on PATH",
        solution="Install git from https://git-scm.com/downloads",
    )


def print_remote_not_found_error(remote: str, remotes: list[str]) -> None:
    print_error(
        f"Remote '{remote}' not found",
        reason=f"Available remotes: {', '.join(remotes)}" if remotes else "No remotes configured",
        solution=f"watchtower --remote {remotes[0]}" if remotes else "git remote add origin <url>",
    )
