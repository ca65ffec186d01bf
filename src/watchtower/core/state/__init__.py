"""Central state store shared by the poll loop, actions and renderer."""

from watchtower.core.state.store import (
    ActivityLogEntry,
    ErrorToast,
    FlashMessage,
    OperationToken,
    ServerLogEntry,
    StashPrompt,
    Store,
    SwitchHistoryEntry,
    get_initial_state,
)

__all__ = [
    "ActivityLogEntry",
    "ErrorToast",
    "FlashMessage",
    "OperationToken",
    "ServerLogEntry",
    "StashPrompt",
    "Store",
    "SwitchHistoryEntry",
    "get_initial_state",
]
