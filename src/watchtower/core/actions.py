"""
Operator-initiated branch operations.

Switch and pull run under the session mutex, so they never interleave with a
poll cycle. A failure classified as dirty-workdir is not reported as an
error; it is handed to StashRecovery, which asks the operator whether to
stash and retry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field

from watchtower.core.errors import GitError, ValidationError
from watchtower.core.git.branches import Branch, generate_sparkline, is_valid_branch_name
from watchtower.core.git.commands import DiffStats
from watchtower.core.recovery import PendingDirtyOperation, StashRecovery
from watchtower.core.session import WatchSession

logger = logging.getLogger(__name__)

SPARKLINE_REFRESH_INTERVAL = 60.0
SPARKLINE_DAYS = 7
PREVIEW_COMMIT_COUNT = 5
PREVIEW_FILE_COUNT = 20


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of a switch or pull.

    Attributes:
        success: Whether the operation completed
        error: The classified failure, if any
        needs_stash: The operation is parked awaiting stash confirmation
    """

    success: bool
    error: GitError | None = None
    needs_stash: bool = False


class PreviewData(BaseModel):
    """Recent history of a branch relative to the checked-out one."""

    branch: str
    commits: list[str] = []
    files: list[str] = []
    diff_stats: DiffStats = Field(default_factory=DiffStats)


class BranchActions:
    """
    Switch, pull, undo and delete, plus read-only preview queries.

    Example:
        >>> actions = BranchActions(session)
        >>> result = await actions.switch_to_branch("feature/login")
        >>> if result.needs_stash:
        ...     await actions.recovery.confirm()
    """

    def __init__(
        self,
        session: WatchSession,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.recovery = StashRecovery(session, self)
        self._clock = clock
        self._last_sparkline_refresh: float | None = None

    # ------------------------------------------------------------------
    # Switch
    # ------------------------------------------------------------------

    async def switch_to_branch(self, name: str, record_history: bool = True) -> ActionResult:
        """
        Check out a branch, creating a tracking branch if only the remote has it.

        A dirty working tree parks the switch as the pending operation and
        publishes a stash prompt instead of failing.
        """
        store = self.session.store
        if not is_valid_branch_name(name):
            error = ValidationError.invalid_branch_name(name)
            store.add_log(f"Cannot switch: {error.message}", "error")
            store.flash("Invalid branch name", "error")
            return ActionResult(success=False)

        self.recovery.clear_unrelated("switch", name)
        async with self.session.mutex:
            result = await self.perform_switch(name, record_history)
        if not result.success and result.error is not None and result.error.is_dirty_workdir():
            self.recovery.request(PendingDirtyOperation(type="switch", branch=name))
            return ActionResult(success=False, error=result.error, needs_stash=True)
        return result

    async def perform_switch(self, name: str, record_history: bool = True) -> ActionResult:
        """Switch without taking the mutex. The caller must hold it."""
        session = self.session
        store = session.store
        previous = store.get("current_branch")
        if name == previous and not store.get("is_detached_head"):
            store.flash(f"Already on {name}", "info")
            return ActionResult(success=True)

        # checkout carries non-colliding untracked files along silently
        try:
            dirty = await session.runner.has_uncommitted_changes()
        except GitError as e:
            logger.warning(f"Could not read working tree status ({e.category.value}): {e.message}")
            dirty = False
        if dirty:
            logger.info(f"Switch to {name} blocked by local changes")
            return ActionResult(
                success=False,
                error=GitError(
                    f"Local changes block switching to {name}",
                    "GIT_DIRTY_WORKDIR",
                    command="git status --porcelain",
                ),
            )

        store.flash(f"Switching to {name}...", "info")
        result = await session.runner.checkout(name, session.config.remote_name)
        if not result.success:
            error = result.error
            assert error is not None
            if not error.is_dirty_workdir():
                store.add_log(f"Failed to switch to {name}: {error.message}", "error")
                store.show_error_toast(
                    "Branch Switch Failed", f"Could not switch to {name}", error.to_user_message()
                )
                logger.warning(f"Checkout of {name} failed ({error.category.value})")
            return ActionResult(success=False, error=error)

        branches = [
            b.model_copy(update={"is_new": False, "new_at": None, "is_local": True})
            if b.name == name
            else b
            for b in store.get("branches")
        ]
        store.set_state(
            {
                "current_branch": name,
                "is_detached_head": False,
                "has_merge_conflict": False,
                "branches": branches,
            }
        )
        if record_history and previous:
            store.add_to_history(previous, name)
        store.add_log(f"Switched to {name}", "success")
        store.flash(f"Switched to {name}", "success")
        logger.info(f"Switched from {previous} to {name}")

        await self._restart_server_after_switch()
        session.fire_notify_clients()
        return ActionResult(success=True)

    async def _restart_server_after_switch(self) -> None:
        session = self.session
        manager = session.process_manager
        if manager is None or not session.config.server.restart_on_switch:
            return
        session.store.add_log("Restarting server...", "info")
        result = await manager.restart()
        if not result.success:
            session.store.add_log(f"Server restart failed: {result.error}", "error")

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull_current_branch(self) -> ActionResult:
        """Pull the checked-out branch from the configured remote."""
        self.recovery.clear_unrelated("pull", None)
        async with self.session.mutex:
            result = await self.perform_pull()
        if not result.success and result.error is not None and result.error.is_dirty_workdir():
            self.recovery.request(PendingDirtyOperation(type="pull"))
            return ActionResult(success=False, error=result.error, needs_stash=True)
        return result

    async def perform_pull(self) -> ActionResult:
        """Pull without taking the mutex. The caller must hold it."""
        session = self.session
        store = session.store
        current = store.get("current_branch")
        if not current or store.get("is_detached_head"):
            store.flash("No branch to pull (detached HEAD)", "error")
            return ActionResult(success=False)

        store.flash(f"Pulling {current}...", "info")
        result = await session.runner.pull(session.config.remote_name, current)
        if not result.success:
            error = result.error
            assert error is not None
            if error.is_merge_conflict():
                store.set_state({"has_merge_conflict": True})
                store.add_log("MERGE CONFLICT detected!", "error")
                store.show_error_toast(
                    "Merge Conflict!",
                    "Pull resulted in merge conflicts that need manual resolution.",
                    "Run: git status to see conflicts",
                )
            elif not error.is_dirty_workdir():
                store.add_log(f"Pull failed: {error.message}", "error")
                store.show_error_toast("Pull Failed", error.to_user_message())
            return ActionResult(success=False, error=error)

        new_commit = await session.runner.short_head()
        branches = [
            b.model_copy(update={"has_updates": False, "commit": new_commit or b.commit})
            if b.name == current
            else b
            for b in store.get("branches")
        ]
        store.set_state({"branches": branches, "has_merge_conflict": False})
        if new_commit:
            session.previous_commits[current] = new_commit
        store.add_log(f"Pulled {current}", "success")
        store.flash(f"Pulled {current}", "success")
        session.fire_notify_clients()
        return ActionResult(success=True)

    async def perform(self, operation: PendingDirtyOperation) -> ActionResult:
        """Run a parked operation. The caller must hold the mutex."""
        if operation.type == "switch":
            assert operation.branch is not None
            return await self.perform_switch(operation.branch)
        return await self.perform_pull()

    # ------------------------------------------------------------------
    # Undo and delete
    # ------------------------------------------------------------------

    async def undo_last_switch(self) -> ActionResult:
        """Switch back to where the last recorded switch came from."""
        store = self.session.store
        last = store.get_last_switch()
        if last is None:
            store.flash("No switch to undo", "info")
            return ActionResult(success=False)

        result = await self.switch_to_branch(last.from_branch, record_history=False)
        if result.success:
            store.pop_history()
            store.add_log(f"Undid switch: back on {last.from_branch}", "info")
        return result

    async def delete_branch(self, name: str, force: bool = False) -> ActionResult:
        """
        Delete a local branch.

        The current branch cannot be deleted. A branch that still exists on
        the remote stays listed as remote-only.
        """
        session = self.session
        store = session.store
        if name == store.get("current_branch"):
            store.flash("Cannot delete the current branch", "error")
            return ActionResult(success=False)

        async with session.mutex:
            result = await session.runner.delete_local_branch(name, force=force)
        if not result.success:
            error = result.error
            assert error is not None
            store.add_log(f"Failed to delete {name}: {error.message}", "error")
            return ActionResult(success=False, error=error)

        remaining: list[Branch] = []
        for branch in store.get("branches"):
            if branch.name != name:
                remaining.append(branch)
            elif branch.has_remote:
                remaining.append(branch.model_copy(update={"is_local": False}))
            else:
                session.known_names.discard(name)
                session.previous_commits.pop(name, None)
        store.set_branches(remaining)
        store.add_log(f"Deleted branch {name}", "success")
        return ActionResult(success=True)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    async def get_preview_data(self, name: str) -> PreviewData:
        runner = self.session.runner
        commits = await runner.log(name, count=PREVIEW_COMMIT_COUNT)
        files = await runner.changed_files(name)
        stats = await runner.get_diff_stats("HEAD", name)
        return PreviewData(
            branch=name,
            commits=commits,
            files=files[:PREVIEW_FILE_COUNT],
            diff_stats=stats,
        )

    async def refresh_sparklines(self, force: bool = False) -> bool:
        """
        Recompute the 7-day activity sparkline of every live branch.

        Throttled to once per SPARKLINE_REFRESH_INTERVAL unless forced.

        Returns:
            True if the cache was refreshed
        """
        now = self._clock()
        if (
            not force
            and self._last_sparkline_refresh is not None
            and now - self._last_sparkline_refresh < SPARKLINE_REFRESH_INTERVAL
        ):
            return False
        self._last_sparkline_refresh = now

        store = self.session.store
        cache = dict(store.get("sparkline_cache"))
        for branch in store.get("branches"):
            if branch.is_deleted:
                continue
            ref = branch.name if branch.is_local else f"{self.session.config.remote_name}/{branch.name}"
            try:
                counts = await self.session.runner.commits_by_day(ref, SPARKLINE_DAYS)
            except ValidationError:
                continue
            cache[branch.name] = generate_sparkline(counts)
        store.set_state({"sparkline_cache": cache})
        return True


__all__ = ["ActionResult", "BranchActions", "PreviewData"]
