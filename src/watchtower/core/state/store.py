"""
Central state store.

A single flat snapshot that the poll loop, branch actions, stash recovery and
process manager publish into, and that the dashboard renderer reads.

All writes are whole-field replacements merged through ``set_state``; no
component mutates a value held in the snapshot in place. Listeners are
called synchronously after every write with (previous, current, changed
keys).

Late results from superseded async work are dropped through operation
tokens:

    >>> token = store.begin_operation("action_data")
    >>> data = await slow_lookup()
    >>> store.set_state_if_current(token, {"flash_message": ...})
    False  # if another begin_operation("action_data") happened meanwhile
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from watchtower.core.git.branches import Branch

logger = logging.getLogger(__name__)

MessageType = Literal["info", "success", "warning", "error", "update"]

MAX_HISTORY_ENTRIES = 20
MAX_SERVER_LOG_LINES = 500


class FlashMessage(BaseModel):
    text: str
    type: MessageType = "info"


class ErrorToast(BaseModel):
    """Error notification with a remediation hint."""

    title: str
    message: str
    hint: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ActivityLogEntry(BaseModel):
    message: str
    type: MessageType = "info"
    timestamp: datetime = Field(default_factory=datetime.now)


class SwitchHistoryEntry(BaseModel):
    from_branch: str
    to_branch: str
    timestamp: datetime = Field(default_factory=datetime.now)


class ServerLogEntry(BaseModel):
    line: str
    is_error: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class StashPrompt(BaseModel):
    """Prompt shown while a dirty-workdir operation awaits confirmation."""

    operation: Literal["switch", "pull"]
    branch: str | None = None
    message: str = ""


def get_initial_state() -> dict[str, Any]:
    """Default value for every key the store accepts."""
    size = shutil.get_terminal_size((80, 24))
    return {
        # Git
        "branches": [],
        "current_branch": None,
        "selected_index": 0,
        "selected_branch_name": None,
        "is_detached_head": False,
        "has_merge_conflict": False,
        "search_query": "",
        # Notifications
        "flash_message": None,
        "error_toast": None,
        "stash_confirm": None,
        "stash_warning": None,
        # Activity
        "activity_log": [],
        "switch_history": [],
        # Polling
        "is_polling": False,
        "polling_status": "idle",
        "is_offline": False,
        "last_fetch_duration": 0,
        "consecutive_network_failures": 0,
        "adaptive_poll_interval": 5000,
        # Server
        "server_running": False,
        "server_crashed": False,
        "server_logs": [],
        # Terminal
        "terminal_width": size.columns,
        "terminal_height": size.lines,
        # Settings
        "visible_branch_count": 7,
        "sound_enabled": True,
        # Caches
        "branch_pr_status_map": {},
        "sparkline_cache": {},
        # Startup config
        "server_mode": "none",
        "port": 3000,
        "max_log_entries": 10,
        "project_name": "",
        "client_count": 0,
    }


STATE_KEYS = frozenset(get_initial_state())

Listener = Callable[[dict[str, Any], dict[str, Any], list[str]], None]
Middleware = Callable[[dict[str, Any], dict[str, Any]], "dict[str, Any] | None"]


@dataclass(frozen=True)
class OperationToken:
    """Identity of one in-flight async operation within a scope."""

    scope: str
    generation: int


class Store:
    """
    Observable flat state snapshot.

    Example:
        >>> store = Store({"project_name": "demo"})
        >>> unsubscribe = store.subscribe_to_keys(
        ...     ["current_branch"], lambda prev, new: print(new["current_branch"])
        ... )
        >>> store.set_state({"current_branch": "main"})
        main
    """

    def __init__(self, initial_state: dict[str, Any] | None = None) -> None:
        overrides = initial_state or {}
        self._check_keys(overrides)
        self._state: dict[str, Any] = {**get_initial_state(), **overrides}
        self._listeners: list[Listener] = []
        self._middlewares: list[Middleware] = []
        self._generations: dict[str, int] = {}

    @staticmethod
    def _check_keys(updates: dict[str, Any]) -> None:
        unknown = set(updates) - STATE_KEYS
        if unknown:
            raise KeyError(f"Unknown state keys: {', '.join(sorted(unknown))}")

    def get_state(self) -> dict[str, Any]:
        """Shallow copy of the current snapshot."""
        return dict(self._state)

    def get(self, key: str) -> Any:
        return self._state[key]

    def set_state(self, updates: dict[str, Any]) -> None:
        """
        Merge updates into the snapshot and notify listeners.

        Raises:
            KeyError: If any key is not a known state key
        """
        self._check_keys(updates)
        prev_state = self._state

        processed = updates
        for middleware in self._middlewares:
            result = middleware(prev_state, processed)
            if result is not None:
                processed = result

        self._state = {**prev_state, **processed}
        self._notify(prev_state, self._state, list(processed))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for every change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_to_keys(
        self,
        keys: Iterable[str],
        listener: Callable[[dict[str, Any], dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a listener called only when one of ``keys`` changes."""
        watched = set(keys)

        def filtered(prev: dict[str, Any], new: dict[str, Any], changed: list[str]) -> None:
            if watched.intersection(changed):
                listener(prev, new)

        return self.subscribe(filtered)

    def use(self, middleware: Middleware) -> None:
        """Add a middleware that may rewrite updates before they are applied."""
        self._middlewares.append(middleware)

    def _notify(self, prev: dict[str, Any], new: dict[str, Any], changed: list[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(prev, new, changed)
            except Exception:
                logger.exception("Store listener error")

    def reset(self, overrides: dict[str, Any] | None = None) -> None:
        overrides = overrides or {}
        self._check_keys(overrides)
        prev_state = self._state
        self._state = {**get_initial_state(), **overrides}
        self._notify(prev_state, self._state, list(self._state))

    # ------------------------------------------------------------------
    # Stale-write suppression
    # ------------------------------------------------------------------

    def begin_operation(self, scope: str) -> OperationToken:
        """
        Start a new operation in ``scope``, superseding any earlier one.
        """
        generation = self._generations.get(scope, 0) + 1
        self._generations[scope] = generation
        return OperationToken(scope=scope, generation=generation)

    def is_current(self, token: OperationToken) -> bool:
        return self._generations.get(token.scope) == token.generation

    def set_state_if_current(self, token: OperationToken, updates: dict[str, Any]) -> bool:
        """
        Apply updates only if no newer operation began in the token's scope.

        Returns:
            Whether the updates were applied
        """
        if not self.is_current(token):
            logger.debug(f"Dropping stale result for {token.scope}#{token.generation}")
            return False
        self.set_state(updates)
        return True

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def flash(self, text: str, type: MessageType = "info") -> None:
        self.set_state({"flash_message": FlashMessage(text=text, type=type)})

    def clear_flash(self) -> None:
        self.set_state({"flash_message": None})

    def show_error_toast(self, title: str, message: str, hint: str | None = None) -> None:
        self.set_state({"error_toast": ErrorToast(title=title, message=message, hint=hint)})

    def hide_error_toast(self) -> None:
        self.set_state({"error_toast": None})

    def add_log(self, message: str, type: MessageType = "info") -> None:
        max_entries = self._state["max_log_entries"]
        entry = ActivityLogEntry(message=message, type=type)
        self.set_state({"activity_log": [*self._state["activity_log"], entry][-max_entries:]})

    def add_to_history(self, from_branch: str, to_branch: str) -> None:
        entry = SwitchHistoryEntry(from_branch=from_branch, to_branch=to_branch)
        history = [*self._state["switch_history"], entry][-MAX_HISTORY_ENTRIES:]
        self.set_state({"switch_history": history})

    def get_last_switch(self) -> SwitchHistoryEntry | None:
        history = self._state["switch_history"]
        return history[-1] if history else None

    def pop_history(self) -> None:
        self.set_state({"switch_history": self._state["switch_history"][:-1]})

    def add_server_log(self, line: str, is_error: bool = False) -> None:
        entry = ServerLogEntry(line=line, is_error=is_error)
        logs = [*self._state["server_logs"], entry][-MAX_SERVER_LOG_LINES:]
        self.set_state({"server_logs": logs})

    def clear_server_logs(self) -> None:
        self.set_state({"server_logs": []})

    def set_branches(self, branches: list[Branch]) -> None:
        """Replace the branch list, keeping the selection on the same name."""
        index = self._state["selected_index"]
        selected_name = self._state["selected_branch_name"]
        if selected_name:
            for i, branch in enumerate(branches):
                if branch.name == selected_name:
                    index = i
                    break
        index = max(0, min(index, len(branches) - 1)) if branches else 0
        self.set_state(
            {
                "branches": branches,
                "selected_index": index,
                "selected_branch_name": branches[index].name if branches else None,
            }
        )

    def set_selected_index(self, index: int) -> None:
        branches = self._state["branches"]
        if not branches:
            self.set_state({"selected_index": 0, "selected_branch_name": None})
            return
        index = max(0, min(int(index), len(branches) - 1))
        self.set_state({"selected_index": index, "selected_branch_name": branches[index].name})

    def move_selection(self, delta: int) -> None:
        new_index = self._state["selected_index"] + delta
        if 0 <= new_index < len(self._state["branches"]):
            self.set_selected_index(new_index)

    def get_selected_branch(self) -> Branch | None:
        branches = self._state["branches"]
        index = self._state["selected_index"]
        return branches[index] if 0 <= index < len(branches) else None

    def get_filtered_branches(self) -> list[Branch]:
        query = self._state["search_query"]
        branches = self._state["branches"]
        if not query:
            return branches
        query = query.lower()
        return [b for b in branches if query in b.name.lower()]

    def set_terminal_size(self, width: int, height: int) -> None:
        self.set_state({"terminal_width": width, "terminal_height": height})


__all__ = [
    "ActivityLogEntry",
    "ErrorToast",
    "FlashMessage",
    "OperationToken",
    "STATE_KEYS",
    "ServerLogEntry",
    "StashPrompt",
    "Store",
    "SwitchHistoryEntry",
    "get_initial_state",
]
