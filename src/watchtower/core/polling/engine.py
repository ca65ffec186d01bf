"""
Pure decision logic for the poll loop.

Nothing here touches git, the store or the clock except through arguments,
so every rule of a poll cycle can be tested on plain Branch lists:

- which branches are new, deleted or updated since the previous cycle
- the business ordering of the list
- where the selection lands after reordering
- how the poll interval reacts to fetch latency

The interval controller is deliberately simple: fixed thresholds, a doubling
step and a hard cap. The thresholds are module constants; the running loop
only picks up a changed interval when its timer is restarted.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from watchtower.core.git.branches import Branch
from watchtower.core.git.pr import PrStatus, is_base_branch

SLOW_FETCH_MS = 15_000
VERY_SLOW_FETCH_MS = 30_000
FAST_FETCH_MS = 5_000
MAX_POLL_INTERVAL_MS = 60_000

OFFLINE_FAILURE_THRESHOLD = 3

IntervalWarning = Literal["slow", "very_slow", "restored"]


@dataclass(frozen=True)
class IntervalDecision:
    """Next poll interval and what, if anything, to tell the operator."""

    interval: int
    warning: IntervalWarning | None = None


@dataclass(frozen=True)
class Selection:
    index: int
    name: str | None


def detect_new_branches(
    branches: Iterable[Branch],
    known_names: set[str],
    now: datetime,
) -> list[Branch]:
    """Flag branches whose names were never seen before as new."""
    new_branches = []
    for branch in branches:
        if branch.name not in known_names:
            branch.is_new = True
            branch.new_at = now
            new_branches.append(branch)
    return new_branches


def carry_new_flags(
    branches: Iterable[Branch],
    previous: Iterable[Branch],
    current_branch: str | None,
) -> None:
    """
    Keep ``is_new`` set on branches flagged in an earlier cycle.

    The flag is sticky until the branch becomes the current branch.
    """
    previous_new = {b.name: b.new_at for b in previous if b.is_new}
    for branch in branches:
        if branch.name == current_branch:
            branch.is_new = False
            branch.new_at = None
        elif branch.name in previous_new and not branch.is_new:
            branch.is_new = True
            branch.new_at = previous_new[branch.name]


def detect_deleted_branches(
    known_names: Iterable[str],
    fetched_names: set[str],
    previous: Iterable[Branch],
    now: datetime,
) -> list[Branch]:
    """
    Find known branches missing from the latest listing.

    Returns copies of the previous entries, flagged deleted, so they stay in
    the list. Only newly missing ones get a fresh ``deleted_at``.
    """
    previous_by_name = {b.name: b for b in previous}
    deleted = []
    for name in known_names:
        if name in fetched_names:
            continue
        existing = previous_by_name.get(name)
        if existing is None:
            continue
        entry = existing.model_copy()
        if not entry.is_deleted:
            entry.is_deleted = True
            entry.deleted_at = now
        entry.just_updated = False
        deleted.append(entry)
    return deleted


def detect_updated_branches(
    branches: Iterable[Branch],
    previous_commits: Mapping[str, str],
    current_branch: str | None,
) -> list[Branch]:
    """
    Flag branches whose commit moved since the previous cycle.

    The current branch is excluded (auto-pull handles it) and so are deleted
    entries. ``just_updated`` is cleared on everything else.
    """
    updated = []
    for branch in branches:
        branch.just_updated = False
        if branch.is_deleted:
            continue
        prev_commit = previous_commits.get(branch.name)
        if prev_commit and prev_commit != branch.commit and branch.name != current_branch:
            branch.just_updated = True
            updated.append(branch)
    return updated


def is_merged(branch: Branch, pr_status_map: Mapping[str, PrStatus]) -> bool:
    """Whether the branch has a merged PR and is not a base branch."""
    status = pr_status_map.get(branch.name)
    return status is not None and status.state == "MERGED" and not is_base_branch(branch.name)


def sort_branches(
    branches: list[Branch],
    pr_status_map: Mapping[str, PrStatus] | None = None,
    current_branch: str | None = None,
) -> list[Branch]:
    """
    Apply the business ordering.

    Deleted branches sink to the bottom, merged ones sit just above them
    (unless current), new ones float to the top, and the rest keep
    date-descending order with ties broken by name.
    """
    pr_status_map = pr_status_map or {}

    def key(branch: Branch) -> tuple[bool, bool, bool, float, str]:
        merged = branch.name != current_branch and is_merged(branch, pr_status_map)
        return (
            branch.is_deleted,
            merged and not branch.is_deleted,
            not branch.is_new,
            -branch.sort_timestamp,
            branch.name,
        )

    return sorted(branches, key=key)


def calculate_adaptive_interval(
    fetch_duration_ms: int,
    current_interval: int,
    base_interval: int,
) -> IntervalDecision:
    """
    Decide the next poll interval from the last fetch's latency.

    - above VERY_SLOW_FETCH_MS: double, capped at MAX_POLL_INTERVAL_MS
    - above SLOW_FETCH_MS: keep, warn
    - below FAST_FETCH_MS while backed off: restore the baseline

    Example:
        >>> calculate_adaptive_interval(31_000, 5_000, 5_000)
        IntervalDecision(interval=10000, warning='very_slow')
    """
    if fetch_duration_ms > VERY_SLOW_FETCH_MS:
        return IntervalDecision(
            interval=min(current_interval * 2, MAX_POLL_INTERVAL_MS),
            warning="very_slow",
        )
    if fetch_duration_ms > SLOW_FETCH_MS:
        return IntervalDecision(interval=current_interval, warning="slow")
    if fetch_duration_ms < FAST_FETCH_MS and current_interval > base_interval:
        return IntervalDecision(interval=base_interval, warning="restored")
    return IntervalDecision(interval=current_interval)


def restore_selection(
    branches: list[Branch],
    previous_name: str | None,
    previous_index: int,
) -> Selection:
    """
    Keep the selection on the same branch name after reordering.

    If the name is gone, the index is clamped into the new list.
    """
    if previous_name:
        for i, branch in enumerate(branches):
            if branch.name == previous_name:
                return Selection(index=i, name=previous_name)
        index = min(previous_index, max(0, len(branches) - 1))
        return Selection(index=index, name=branches[index].name if branches else None)

    if previous_index >= len(branches):
        index = max(0, len(branches) - 1)
        return Selection(index=index, name=branches[index].name if branches else None)
    return Selection(index=previous_index, name=previous_name)


__all__ = [
    "FAST_FETCH_MS",
    "IntervalDecision",
    "MAX_POLL_INTERVAL_MS",
    "OFFLINE_FAILURE_THRESHOLD",
    "SLOW_FETCH_MS",
    "Selection",
    "VERY_SLOW_FETCH_MS",
    "calculate_adaptive_interval",
    "carry_new_flags",
    "detect_deleted_branches",
    "detect_new_branches",
    "detect_updated_branches",
    "is_merged",
    "restore_selection",
    "sort_branches",
]
