"""
Git command execution layer.

Every git invocation in watchtower goes through GitRunner:

- argv lists passed to ``asyncio.create_subprocess_exec`` (never a shell)
- per-call timeouts (short 5s, default 30s, fetch 60s); on expiry the child's
  process group is killed and a GIT_TIMEOUT GitError carrying only the
  command text is raised
- output bounded to MAX_OUTPUT_BYTES; anything past the cap is dropped
- non-zero exits become classified GitErrors

``run_silent`` swallows failures and returns None, for lookups where absence is
the expected answer (does this branch exist, is there a remote URL).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import sys
import time
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from watchtower.core.concurrency import OperationTimeoutError, with_timeout
from watchtower.core.errors import GitError
from watchtower.core.git.branches import sanitize_branch_name

logger = logging.getLogger(__name__)

IS_UNIX = sys.platform != "win32"

SHORT_TIMEOUT = 5.0
DEFAULT_TIMEOUT = 30.0
FETCH_TIMEOUT = 60.0

MAX_OUTPUT_BYTES = 10 * 1024 * 1024

REF_FORMAT = "%(refname:short)|%(committerdate:iso8601)|%(objectname:short)|%(subject)"


@dataclass(frozen=True)
class CommandOutput:
    """Decoded output of a successful git invocation."""

    stdout: str
    stderr: str


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of an operation that reports failure instead of raising.

    Attributes:
        success: Whether the operation completed
        error: The classified failure when success is False
    """

    success: bool
    error: GitError | None = None


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a fetch; a failed fetch is tolerated by the poll loop."""

    success: bool
    duration_ms: int
    error: GitError | None = None


@dataclass(frozen=True)
class DiffStats:
    """Line counts from ``git diff --stat``."""

    added: int = 0
    deleted: int = 0


_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")
_DELETIONS_RE = re.compile(r"(\d+) deletions?\(-\)")


def parse_diff_stats(output: str) -> DiffStats:
    """
    Parse the summary line of ``git diff --stat``.

    Example:
        >>> parse_diff_stats(" 2 files changed, 10 insertions(+), 3 deletions(-)")
        DiffStats(added=10, deleted=3)
    """
    added = _INSERTIONS_RE.search(output or "")
    deleted = _DELETIONS_RE.search(output or "")
    return DiffStats(
        added=int(added.group(1)) if added else 0,
        deleted=int(deleted.group(1)) if deleted else 0,
    )


def _safe_ref(ref: str) -> str:
    """
    A branch name or the literal HEAD.

    Raises:
        ValidationError: If ref is neither
    """
    return ref if ref == "HEAD" else sanitize_branch_name(ref)


async def _read_bounded(stream: asyncio.StreamReader | None, limit: int) -> bytes:
    """Read a stream to EOF, keeping at most ``limit`` bytes."""
    if stream is None:
        return b""
    chunks: list[bytes] = []
    kept = 0
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        if kept < limit:
            chunk = chunk[: limit - kept]
            chunks.append(chunk)
            kept += len(chunk)
    return b"".join(chunks)


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a timed-out git child and its process group."""
    if process.returncode is not None:
        return
    try:
        if IS_UNIX:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Kill skipped (process may be dead): {e}")
    try:
        await asyncio.wait_for(process.wait(), timeout=2.0)
    except asyncio.TimeoutError:
        logger.warning(f"git process {process.pid} did not exit after SIGKILL")


class GitRunner:
    """
    Run git commands in a repository.

    Example:
        >>> runner = GitRunner("/path/to/repo")
        >>> output = await runner.run(["status", "--porcelain"])
        >>> print(output.stdout)
    """

    def __init__(self, cwd: Path | str | None = None, git_binary: str = "git") -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.git_binary = git_binary

    async def run(
        self,
        args: list[str],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CommandOutput:
        """
        Run ``git <args>``.

        Args:
            args: Arguments after ``git``
            timeout: Time budget in seconds

        Returns:
            CommandOutput with decoded stdout and stderr

        Raises:
            GitError: On non-zero exit (classified), timeout (GIT_TIMEOUT),
                or missing git binary (GIT_NOT_FOUND)
        """
        command = " ".join([self.git_binary, *args])
        logger.debug(f"Running: {command}")

        kwargs: dict[str, object] = {
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "stdin": asyncio.subprocess.DEVNULL,
            "cwd": str(self.cwd),
        }
        if IS_UNIX:
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(self.git_binary, *args, **kwargs)  # type: ignore[arg-type]
        except FileNotFoundError:
            raise GitError(
                "Git is not installed or not in PATH",
                "GIT_NOT_FOUND",
                command=command,
            ) from None

        try:
            stdout_bytes, stderr_bytes, _ = await with_timeout(
                asyncio.gather(
                    _read_bounded(process.stdout, MAX_OUTPUT_BYTES),
                    _read_bounded(process.stderr, MAX_OUTPUT_BYTES),
                    process.wait(),
                ),
                timeout,
                f"Command timed out after {timeout}s: {command}",
            )
        except OperationTimeoutError as e:
            await _kill(process)
            logger.warning(f"Timed out after {timeout}s: {command}")
            raise GitError(
                e.message,
                "GIT_TIMEOUT",
                {"timeout": timeout},
                command=command,
            ) from None
        except asyncio.CancelledError:
            await _kill(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if process.returncode != 0:
            raise GitError.from_process_failure(
                command, stderr=stderr, stdout=stdout, exit_code=process.returncode
            )

        return CommandOutput(stdout=stdout, stderr=stderr)

    async def run_silent(
        self,
        args: list[str],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CommandOutput | None:
        """Like run(), but return None instead of raising on failure."""
        try:
            return await self.run(args, timeout=timeout)
        except GitError as e:
            logger.debug(f"Silent git failure ({e.code}): {e.command}")
            return None

    # ------------------------------------------------------------------
    # Repository queries
    # ------------------------------------------------------------------

    async def is_available(self) -> bool:
        return await self.run_silent(["--version"], timeout=SHORT_TIMEOUT) is not None

    async def is_repository(self) -> bool:
        return (
            await self.run_silent(["rev-parse", "--git-dir"], timeout=SHORT_TIMEOUT)
            is not None
        )

    async def get_remotes(self) -> list[str]:
        result = await self.run_silent(["remote"], timeout=SHORT_TIMEOUT)
        if result is None:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def remote_exists(self, remote_name: str) -> bool:
        return remote_name in await self.get_remotes()

    async def get_remote_url(self, remote_name: str = "origin") -> str | None:
        result = await self.run_silent(
            ["remote", "get-url", remote_name], timeout=SHORT_TIMEOUT
        )
        return result.stdout.strip() or None if result else None

    async def current_branch(self) -> tuple[str | None, bool]:
        """
        Resolve the checked-out branch.

        Returns:
            Tuple of (name, is_detached). A detached HEAD is reported as
            ``HEAD@<short-commit>``. Name is None if HEAD cannot be read.
        """
        result = await self.run_silent(["rev-parse", "--abbrev-ref", "HEAD"])
        if result is None:
            return None, False
        name = result.stdout.strip()
        if name != "HEAD":
            return name, False
        short = await self.short_head()
        return (f"HEAD@{short}" if short else "HEAD"), True

    async def previous_branch(self) -> str | None:
        """The branch checked out before the current one (``@{-1}``), if any."""
        result = await self.run_silent(["rev-parse", "--abbrev-ref", "@{-1}"], timeout=SHORT_TIMEOUT)
        if result is None:
            return None
        name = result.stdout.strip()
        return name if name and name != "HEAD" else None

    async def short_head(self) -> str | None:
        result = await self.run_silent(["rev-parse", "--short", "HEAD"])
        return result.stdout.strip() if result else None

    async def has_uncommitted_changes(self) -> bool:
        result = await self.run(["status", "--porcelain"])
        return bool(result.stdout.strip())

    # ------------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------------

    async def list_refs(self, pattern: str) -> str:
        """
        Enumerate refs under ``pattern`` in the reconciliation format.

        Raises:
            GitError: With code GIT_BRANCH_LIST_FAILED if listing fails
        """
        try:
            result = await self.run(
                ["for-each-ref", "--sort=-committerdate", f"--format={REF_FORMAT}", pattern]
            )
        except GitError as e:
            raise GitError(
                f"Failed to list branches: {e.message}",
                "GIT_BRANCH_LIST_FAILED",
                command=e.command,
                stderr=e.stderr,
                category=e.category,
            ) from e
        return result.stdout

    async def local_branches(self) -> list[str]:
        result = await self.run_silent(["branch", "--format=%(refname:short)"])
        if result is None:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def local_branch_exists(self, name: str) -> bool:
        safe = sanitize_branch_name(name)
        result = await self.run_silent(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{safe}"]
        )
        return result is not None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def fetch(self, remote: str = "origin", prune: bool = True, all_remotes: bool = True) -> FetchResult:
        """
        Fetch from remotes, reporting rather than raising.

        Args:
            remote: Remote fetched when all_remotes is False
            prune: Remove remote-tracking refs that no longer exist
            all_remotes: Fetch every configured remote
        """
        args = ["fetch"]
        args.append("--all" if all_remotes else remote)
        if prune:
            args.append("--prune")

        started = time.monotonic()
        try:
            await self.run(args, timeout=FETCH_TIMEOUT)
        except GitError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"Fetch failed ({e.category.value}): {e.message}")
            return FetchResult(success=False, duration_ms=duration_ms, error=e)
        return FetchResult(success=True, duration_ms=int((time.monotonic() - started) * 1000))

    async def pull(self, remote: str, branch: str) -> OperationResult:
        safe = sanitize_branch_name(branch)
        try:
            await self.run(["pull", remote, safe], timeout=FETCH_TIMEOUT)
        except GitError as e:
            return OperationResult(success=False, error=e)
        return OperationResult(success=True)

    async def checkout(self, name: str, remote: str = "origin") -> OperationResult:
        """
        Check out a branch, creating a tracking branch from the remote if
        there is no local one yet.
        """
        safe = sanitize_branch_name(name)
        if await self.local_branch_exists(safe):
            args = ["checkout", safe]
        else:
            args = ["checkout", "-b", safe, "--track", f"{remote}/{safe}"]
        try:
            await self.run(args)
        except GitError as e:
            return OperationResult(success=False, error=e)
        return OperationResult(success=True)

    async def stash(self, message: str = "", include_untracked: bool = True) -> OperationResult:
        """
        Stash local changes.

        "No local changes to save" is a failure (GIT_STASH_EMPTY): whatever
        blocked the caller was not something a stash can fix.
        """
        args = ["stash", "push"]
        if include_untracked:
            args.append("--include-untracked")
        if message:
            args.extend(["-m", message])
        try:
            result = await self.run(args)
        except GitError as e:
            return OperationResult(success=False, error=e)
        if "No local changes" in result.stdout or "No local changes" in result.stderr:
            return OperationResult(
                success=False,
                error=GitError("No local changes to stash", "GIT_STASH_EMPTY", command="git stash push"),
            )
        return OperationResult(success=True)

    async def stash_pop(self) -> OperationResult:
        try:
            await self.run(["stash", "pop"])
        except GitError as e:
            return OperationResult(success=False, error=e)
        return OperationResult(success=True)

    async def delete_local_branch(self, name: str, force: bool = False) -> OperationResult:
        safe = sanitize_branch_name(name)
        try:
            await self.run(["branch", "-D" if force else "-d", safe])
        except GitError as e:
            return OperationResult(success=False, error=e)
        return OperationResult(success=True)

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    async def get_diff_stats(self, from_ref: str, to_ref: str = "HEAD") -> DiffStats:
        span = f"{_safe_ref(from_ref)}...{_safe_ref(to_ref)}"
        result = await self.run_silent(["diff", "--stat", span])
        if result is None:
            return DiffStats()
        lines = result.stdout.strip().splitlines()
        return parse_diff_stats(lines[-1] if lines else "")

    async def log(self, branch: str, count: int = 5, fmt: str = "%h %s") -> list[str]:
        safe = sanitize_branch_name(branch)
        result = await self.run_silent(["log", safe, f"-{count}", f"--format={fmt}"])
        if result is None:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def commits_by_day(self, branch: str, days: int = 7) -> list[int]:
        """
        Count commits on a branch for each of the last ``days`` days,
        oldest first.
        """
        safe = sanitize_branch_name(branch)
        result = await self.run_silent(
            ["log", safe, f"--since={days} days ago", "--format=%cd", "--date=short"]
        )
        counts = [0] * days
        if result is None:
            return counts
        today_ordinal = date.today().toordinal()
        for line in result.stdout.splitlines():
            parts = line.strip().split("-")
            if len(parts) != 3:
                continue
            try:
                ordinal = date(int(parts[0]), int(parts[1]), int(parts[2])).toordinal()
            except ValueError:
                continue
            age = today_ordinal - ordinal
            if 0 <= age < days:
                counts[days - 1 - age] += 1
        return counts

    async def changed_files(self, branch: str, base: str = "HEAD") -> list[str]:
        safe = sanitize_branch_name(branch)
        result = await self.run_silent(["diff", "--name-only", f"{_safe_ref(base)}...{safe}"])
        if result is None:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def last_commit_body(self, branch: str) -> str:
        safe = sanitize_branch_name(branch)
        result = await self.run_silent(["log", "-1", "--format=%B", safe])
        return result.stdout.strip() if result else ""


__all__ = [
    "CommandOutput",
    "DEFAULT_TIMEOUT",
    "DiffStats",
    "FETCH_TIMEOUT",
    "FetchResult",
    "GitRunner",
    "MAX_OUTPUT_BYTES",
    "OperationResult",
    "REF_FORMAT",
    "SHORT_TIMEOUT",
    "parse_diff_stats",
]
