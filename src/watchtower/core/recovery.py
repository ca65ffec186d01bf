"""
Stash-and-retry workflow for operations blocked by local changes.

State machine:

    IDLE --request--> AWAITING_CONFIRM --confirm--> STASHING --> RETRYING --> IDLE
                              |
                              +--cancel--> IDLE

If the retried operation fails, the stash is popped so the working tree
returns to what it was. If that pop fails the changes are still in the stash
list; a sticky warning stays in the store until the operator acknowledges it.

At most one operation is pending. Starting an unrelated switch or pull drops
the pending one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Literal

from watchtower.core.session import WatchSession
from watchtower.core.state.store import StashPrompt

if TYPE_CHECKING:
    from watchtower.core.actions import BranchActions

logger = logging.getLogger(__name__)

OperationType = Literal["switch", "pull"]


class RecoveryPhase(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRM = "awaiting_confirm"
    STASHING = "stashing"
    RETRYING = "retrying"


class RecoveryOutcome(str, Enum):
    """Result of ``StashRecovery.confirm()``."""

    RETRIED = "retried"
    RESTORED = "restored"
    STASH_FAILED = "stash_failed"
    POP_FAILED = "pop_failed"
    NO_PENDING = "no_pending"


@dataclass(frozen=True)
class PendingDirtyOperation:
    """A switch or pull parked until the operator decides about stashing."""

    type: OperationType
    branch: str | None = None

    def describe(self) -> str:
        if self.type == "switch":
            return f"switching to {self.branch}"
        return "pull"


def stash_message(operation: PendingDirtyOperation) -> str:
    if operation.type == "switch":
        return f"git-watchtower: auto-stash before switching to {operation.branch}"
    return "git-watchtower: auto-stash before pull"


class StashRecovery:
    """
    Offer to stash local changes and retry a blocked operation.

    Example:
        >>> recovery.request(PendingDirtyOperation("switch", "feature/x"))
        >>> outcome = await recovery.confirm()
        >>> outcome
        <RecoveryOutcome.RETRIED: 'retried'>
    """

    def __init__(self, session: WatchSession, actions: BranchActions) -> None:
        self.session = session
        self.actions = actions
        self.phase = RecoveryPhase.IDLE
        self.pending: PendingDirtyOperation | None = None

    def request(self, operation: PendingDirtyOperation) -> None:
        """Park an operation and publish the stash prompt."""
        store = self.session.store
        self.pending = operation
        self.phase = RecoveryPhase.AWAITING_CONFIRM
        store.set_state(
            {
                "stash_confirm": StashPrompt(
                    operation=operation.type,
                    branch=operation.branch,
                    message=f"Local changes block {operation.describe()}. Stash them and retry?",
                )
            }
        )
        store.add_log(f"Uncommitted changes block {operation.describe()}", "warning")
        logger.info(f"Awaiting stash confirmation for {operation}")

    def cancel(self) -> None:
        """Drop the pending operation without touching the working tree."""
        if self.pending is not None:
            self.session.store.add_log(f"Cancelled {self.pending.describe()}", "info")
        self._reset()

    def clear_unrelated(self, type: OperationType, branch: str | None) -> None:
        """Forget the pending operation if a different one is starting."""
        pending = self.pending
        if pending is None or self.phase is not RecoveryPhase.AWAITING_CONFIRM:
            return
        if pending.type != type or pending.branch != branch:
            logger.debug(f"Dropping pending {pending} for new {type} operation")
            self._reset()

    def _reset(self) -> None:
        self.pending = None
        self.phase = RecoveryPhase.IDLE
        self.session.store.set_state({"stash_confirm": None})

    async def confirm(self) -> RecoveryOutcome:
        """
        Stash, retry the pending operation, and restore on failure.

        Holds the session mutex from the stash through the retry so no poll
        cycle runs against the half-recovered tree.
        """
        operation = self.pending
        if operation is None:
            return RecoveryOutcome.NO_PENDING

        session = self.session
        store = session.store
        store.set_state({"stash_confirm": None})

        async with session.mutex:
            self.phase = RecoveryPhase.STASHING
            stashed = await session.runner.stash(stash_message(operation), include_untracked=True)
            if not stashed.success:
                error = stashed.error
                reason = error.message if error is not None else "unknown error"
                store.add_log(f"Stash failed: {reason}", "error")
                store.show_error_toast(
                    "Stash Failed",
                    f"Could not stash changes before {operation.describe()}.",
                    "Commit or stash your changes manually",
                )
                self.pending = None
                self.phase = RecoveryPhase.IDLE
                return RecoveryOutcome.STASH_FAILED

            store.add_log("Stashed local changes", "info")
            self.phase = RecoveryPhase.RETRYING
            result = await self.actions.perform(operation)
            if result.success:
                self.pending = None
                self.phase = RecoveryPhase.IDLE
                store.add_log("Changes remain in the stash (git stash pop to restore)", "info")
                return RecoveryOutcome.RETRIED

            popped = await session.runner.stash_pop()

        self.pending = None
        self.phase = RecoveryPhase.IDLE
        if popped.success:
            store.add_log("Retry failed; restored stashed changes", "warning")
            return RecoveryOutcome.RESTORED

        reason = popped.error.message if popped.error is not None else "unknown error"
        warning = "Your changes are still in the stash. Run: git stash pop"
        store.set_state({"stash_warning": warning})
        store.show_error_toast("Stash Restore Failed", reason, "Run: git stash pop")
        store.add_log(f"Failed to restore stash: {reason}", "error")
        logger.error(f"Stash pop after failed {operation.type} failed: {reason}")
        return RecoveryOutcome.POP_FAILED

    def acknowledge_stash_warning(self) -> None:
        self.session.store.set_state({"stash_warning": None})


__all__ = [
    "PendingDirtyOperation",
    "RecoveryOutcome",
    "RecoveryPhase",
    "StashRecovery",
    "stash_message",
]
