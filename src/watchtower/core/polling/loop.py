"""
The poll/reconcile loop.

One cycle walks ``idle -> fetching -> reconciling -> (auto_pulling) -> idle``:

1. read the current branch (detached HEAD reported as ``HEAD@<short>``)
2. fetch all remotes with prune; a failed fetch is tolerated
3. reconcile local and remote refs, then classify each branch as new,
   deleted (kept, flagged), updated or unchanged
4. apply the business ordering and keep the selection on the same name
5. adapt the poll interval to fetch latency
6. count consecutive network failures toward the offline flag
7. auto-pull the current branch when it is behind and no conflict is flagged

Cycles hold the session mutex for their whole duration. A timer tick that
finds the mutex held (a previous cycle or a user action) is skipped rather
than queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

from watchtower.core.errors import GitError
from watchtower.core.git.branches import Branch, reconcile_branches
from watchtower.core.git.classifier import ErrorCategory
from watchtower.core.polling.engine import (
    OFFLINE_FAILURE_THRESHOLD,
    calculate_adaptive_interval,
    carry_new_flags,
    detect_deleted_branches,
    detect_new_branches,
    detect_updated_branches,
    restore_selection,
    sort_branches,
)
from watchtower.core.session import WatchSession

logger = logging.getLogger(__name__)

PR_STATUS_POLL_INTERVAL = 60.0

MAX_TOAST_MESSAGE = 100


class PollPhase(str, Enum):
    """Values published to the store's ``polling_status``."""

    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    AUTO_PULLING = "auto_pulling"
    ERROR = "error"


def _truncate(text: str, limit: int = MAX_TOAST_MESSAGE) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class PollLoop:
    """
    Drive poll cycles on an adaptive timer.

    Example:
        >>> loop = PollLoop(session)
        >>> await loop.start()
        >>> ...
        >>> await loop.stop()
    """

    def __init__(
        self,
        session: WatchSession,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._pr_task: asyncio.Task[None] | None = None
        self._timer_reset = asyncio.Event()
        self._running = False
        self._slow_warned = False
        self._very_slow_warned = False
        self._last_pr_fetch: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def prime(self) -> None:
        """
        Load the initial branch list without notifying about any of it.

        Every branch seen here is "known", so only later arrivals are new.
        """
        session = self.session
        current, detached = await session.runner.current_branch()
        local = await session.runner.list_refs("refs/heads/")
        remote = await self._list_remote_refs()
        branches = reconcile_branches(local, remote, session.config.remote_name)
        session.seed(branches)
        session.store.set_state({"current_branch": current, "is_detached_head": detached})
        session.store.set_branches(sort_branches(branches, current_branch=current))

    async def start(self) -> None:
        """Prime the branch list if needed and start the timer."""
        if self._running:
            return
        if not self.session.known_names:
            await self.prime()
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Polling every {self.session.store.get('adaptive_poll_interval')}ms"
        )

    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight cycle to finish."""
        self._running = False
        self._timer_reset.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._pr_task is not None and not self._pr_task.done():
            self._pr_task.cancel()
            try:
                await self._pr_task
            except asyncio.CancelledError:
                pass
        self._pr_task = None

    def restart_timer(self) -> None:
        """Restart the wait with the store's current adaptive interval."""
        self._timer_reset.set()

    async def _run(self) -> None:
        while self._running:
            interval = self.session.store.get("adaptive_poll_interval") / 1000
            try:
                await asyncio.wait_for(self._timer_reset.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.poll_once()
            else:
                self._timer_reset.clear()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def poll_once(self) -> bool:
        """
        Run one cycle unless the session mutex is held.

        Returns:
            False if the cycle was skipped
        """
        if not self.session.mutex.try_acquire():
            logger.debug("Skipping poll cycle: git operation in progress")
            return False
        try:
            await self._cycle()
        finally:
            self.session.mutex.release()
        return True

    async def _cycle(self) -> None:
        session = self.session
        store = session.store
        runner = session.runner
        config = session.config

        store.set_state({"is_polling": True, "polling_status": PollPhase.FETCHING.value})
        status = PollPhase.IDLE
        try:
            current, detached = await runner.current_branch()
            previous_current = store.get("current_branch")
            if previous_current and current != previous_current:
                store.add_log(
                    f"Branch switched externally: {previous_current} → {current}", "warning"
                )
                session.fire_notify_clients()
            store.set_state({"current_branch": current, "is_detached_head": detached})

            fetch = await runner.fetch(remote=config.remote_name, prune=True, all_remotes=True)
            store.set_state({"last_fetch_duration": fetch.duration_ms})
            self._apply_adaptive_interval(fetch.duration_ms)
            if fetch.success:
                self._record_network_success()
            elif fetch.error is not None:
                self._record_fetch_failure(fetch.error)

            store.set_state({"polling_status": PollPhase.RECONCILING.value})
            local = await runner.list_refs("refs/heads/")
            remote = await self._list_remote_refs()
            fetched = reconcile_branches(local, remote, config.remote_name)
            self._reconcile(fetched, current)

            self._maybe_refresh_pr_statuses()

            current_info = self._find_branch(current)
            if (
                config.auto_pull
                and not detached
                and current_info is not None
                and current_info.has_updates
                and not current_info.is_deleted
                and not store.get("has_merge_conflict")
            ):
                store.set_state({"polling_status": PollPhase.AUTO_PULLING.value})
                await self._auto_pull(current_info)
        except GitError as e:
            status = PollPhase.ERROR
            self._handle_poll_error(e)
        finally:
            store.set_state({"is_polling": False, "polling_status": status.value})

    async def _list_remote_refs(self) -> str:
        remote_name = self.session.config.remote_name
        try:
            return await self.session.runner.list_refs(f"refs/remotes/{remote_name}/")
        except GitError as e:
            logger.debug(f"No remote refs for {remote_name}: {e.message}")
            return ""

    def _find_branch(self, name: str | None) -> Branch | None:
        if name is None:
            return None
        for branch in self.session.store.get("branches"):
            if branch.name == name:
                return branch
        return None

    def _reconcile(self, fetched: list[Branch], current: str | None) -> None:
        session = self.session
        store = session.store
        now = datetime.now(timezone.utc)
        previous: list[Branch] = store.get("branches")
        fetched_names = {b.name for b in fetched}

        new_branches = detect_new_branches(fetched, session.known_names, now)
        for branch in new_branches:
            store.add_log(f"New branch: {branch.name}", "success")
        carry_new_flags(fetched, previous, current)
        session.known_names.update(fetched_names)

        deleted = detect_deleted_branches(session.known_names, fetched_names, previous, now)
        previously_deleted = {b.name for b in previous if b.is_deleted}
        for branch in deleted:
            if branch.name not in previously_deleted:
                store.add_log(f"Branch deleted: {branch.name}", "warning")

        all_branches = fetched + deleted
        updated = detect_updated_branches(all_branches, session.previous_commits, current)
        for branch in fetched:
            session.previous_commits[branch.name] = branch.commit

        for branch in updated:
            store.add_log(f"Update on {branch.name}: {branch.commit}", "update")
        notify = [b.name for b in updated] + [b.name for b in new_branches if b.name != current]
        if notify:
            store.flash(", ".join(notify), "update")
            session.fire_on_notify(notify)

        state = store.get_state()
        previous_name = state["selected_branch_name"]
        previous_index = state["selected_index"]
        if not previous_name and 0 <= previous_index < len(previous):
            previous_name = previous[previous_index].name

        ordered = sort_branches(all_branches, state["branch_pr_status_map"], current)
        selection = restore_selection(ordered, previous_name, previous_index)
        store.set_state(
            {
                "branches": ordered,
                "selected_index": selection.index,
                "selected_branch_name": selection.name,
            }
        )

    def _apply_adaptive_interval(self, duration_ms: int) -> None:
        store = self.session.store
        base = self.session.config.git_poll_interval
        current = store.get("adaptive_poll_interval")
        decision = calculate_adaptive_interval(duration_ms, current, base)
        seconds = round(duration_ms / 1000)

        if decision.warning == "very_slow":
            if not self._very_slow_warned:
                store.add_log(f"⚠ Fetches taking {seconds}s - network may be slow", "warning")
                logger.warning(f"Very slow fetch: {duration_ms}ms")
                self._very_slow_warned = True
        elif decision.warning == "slow":
            if not self._slow_warned:
                store.add_log(f"Fetches taking {seconds}s", "warning")
                logger.warning(f"Slow fetch: {duration_ms}ms")
                self._slow_warned = True
        elif duration_ms < 5000:
            self._slow_warned = False
            self._very_slow_warned = False

        if decision.interval != current:
            store.set_state({"adaptive_poll_interval": decision.interval})
            verb = "restored to" if decision.warning == "restored" else "increased to"
            store.add_log(f"Polling interval {verb} {decision.interval / 1000:g}s", "info")
            self.restart_timer()

    def _record_network_success(self) -> None:
        store = self.session.store
        if store.get("is_offline"):
            store.add_log("Connection restored", "success")
            logger.info("Connection restored")
        if store.get("is_offline") or store.get("consecutive_network_failures"):
            store.set_state({"consecutive_network_failures": 0, "is_offline": False})

    def _record_network_failure(self) -> None:
        store = self.session.store
        failures = store.get("consecutive_network_failures") + 1
        store.set_state({"consecutive_network_failures": failures})
        if failures >= OFFLINE_FAILURE_THRESHOLD and not store.get("is_offline"):
            store.set_state({"is_offline": True})
            store.add_log(f"Network unavailable ({failures} failures)", "error")
            store.show_error_toast(
                "Network Unavailable",
                "Cannot connect to the remote repository. "
                "Git operations will fail until connection is restored.",
                "Check your internet connection",
            )
            logger.error(f"Offline after {failures} consecutive network failures")

    def _record_fetch_failure(self, error: GitError) -> None:
        if error.category is ErrorCategory.NETWORK:
            self._record_network_failure()
        elif error.category is ErrorCategory.AUTH:
            self._report_auth_error()
        else:
            logger.info(f"Fetch failed ({error.category.value}); continuing with local refs")

    def _report_auth_error(self) -> None:
        store = self.session.store
        store.add_log("Authentication error - check credentials", "error")
        store.add_log("Try: git config credential.helper store", "warning")
        store.show_error_toast(
            "Git Authentication Error",
            "Failed to authenticate with the remote repository.",
            "Run: git config credential.helper store",
        )

    def _handle_poll_error(self, error: GitError) -> None:
        if error.category is ErrorCategory.NETWORK:
            self._record_network_failure()
        elif error.category is ErrorCategory.AUTH:
            self._report_auth_error()
        else:
            handled = self.session.error_handler.handle(error, "poll")
            self.session.store.add_log(f"Polling error: {handled.message}", handled.severity)
        logger.warning(f"Poll cycle failed ({error.category.value}): {error.message}")

    async def _auto_pull(self, branch: Branch) -> None:
        session = self.session
        store = session.store
        name = branch.name

        store.add_log(f"Auto-pulling changes for {name}...", "update")
        result = await session.runner.pull(session.config.remote_name, name)

        if result.success:
            new_commit = await session.runner.short_head() or branch.remote_commit or branch.commit
            pulled = branch.model_copy(update={"has_updates": False, "commit": new_commit})
            store.set_state(
                {
                    "branches": [pulled if b.name == name else b for b in store.get("branches")],
                    "has_merge_conflict": False,
                }
            )
            session.previous_commits[name] = new_commit
            store.add_log(f"Pulled successfully from {name}", "success")
            logger.info(f"Auto-pulled {name} to {new_commit}")
            session.fire_notify_clients()
            return

        error = result.error
        assert error is not None
        if error.is_merge_conflict():
            store.set_state({"has_merge_conflict": True})
            store.add_log("MERGE CONFLICT detected!", "error")
            store.add_log("Resolve conflicts manually, then commit", "warning")
            store.show_error_toast(
                "Merge Conflict!",
                "Auto-pull resulted in merge conflicts that need manual resolution.",
                "Run: git status to see conflicts",
            )
        elif error.is_auth_error():
            store.add_log("Authentication failed during pull", "error")
            store.add_log("Check your Git credentials", "warning")
            store.show_error_toast(
                "Authentication Failed",
                "Could not authenticate with the remote during auto-pull.",
                "Check your Git credentials",
            )
        else:
            if error.is_network_error():
                self._record_network_failure()
            store.add_log(f"Auto-pull failed: {error.message}", "error")
            store.show_error_toast(
                "Auto-Pull Failed",
                _truncate(error.message),
                "Try pulling manually with: watchtower pull",
            )
        logger.warning(f"Auto-pull of {name} failed ({error.category.value})")

    # ------------------------------------------------------------------
    # PR status map
    # ------------------------------------------------------------------

    def _maybe_refresh_pr_statuses(self) -> None:
        if self.session.environment is None:
            return
        if self._pr_task is not None and not self._pr_task.done():
            return
        now = self._clock()
        if self._last_pr_fetch is not None and now - self._last_pr_fetch < PR_STATUS_POLL_INTERVAL:
            return
        self._pr_task = asyncio.create_task(self._refresh_pr_statuses())

    async def _refresh_pr_statuses(self) -> None:
        try:
            status_map = await self.session.fetch_all_pr_statuses()
        finally:
            self._last_pr_fetch = self._clock()
        if status_map is not None:
            self.session.store.set_state({"branch_pr_status_map": status_map})


__all__ = ["PR_STATUS_POLL_INTERVAL", "PollLoop", "PollPhase"]
