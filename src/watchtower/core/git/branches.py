"""
Branch model and reconciliation.

Reconciliation turns two raw ref listings (local heads and remote-tracking
refs, each a sequence of ``name|date|commit|subject`` lines) into one
deduplicated list of Branch entries, sorted most recently active first.

Branch names are validated before they are used anywhere else; an invalid
name in git output is skipped, never passed on to a later command.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from watchtower.core.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_BRANCH_NAME_LENGTH = 255
BRANCH_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-./]+$")

SPARKLINE_CHARS = "▁▂▃▄▅▆▇█"


class Branch(BaseModel):
    """
    One tracked branch, local and/or remote.

    Lifecycle flags (is_new, is_deleted, just_updated) are set by the poll
    loop, not by reconciliation.
    """

    model_config = ConfigDict(validate_assignment=False)

    name: str = Field(..., min_length=1, max_length=MAX_BRANCH_NAME_LENGTH)
    commit: str = ""
    subject: str = ""
    date: datetime | None = None

    remote_commit: str | None = None
    remote_date: datetime | None = None
    remote_subject: str | None = None

    is_local: bool = False
    has_remote: bool = False
    has_updates: bool = False

    is_new: bool = False
    new_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    just_updated: bool = False

    sparkline: str | None = None

    @property
    def sort_timestamp(self) -> float:
        return self.date.timestamp() if self.date else 0.0


def is_valid_branch_name(name: object) -> bool:
    """
    Check a branch name is safe to pass to git.

    Rejects empty names, names over 255 characters, characters outside
    ``[A-Za-z0-9_-./]``, ``..``, a leading dash, and leading or trailing
    slashes.
    """
    if not isinstance(name, str) or not name:
        return False
    if len(name) > MAX_BRANCH_NAME_LENGTH:
        return False
    if not BRANCH_NAME_PATTERN.match(name):
        return False
    if ".." in name or name.startswith("-"):
        return False
    if name.startswith("/") or name.endswith("/"):
        return False
    return True


def sanitize_branch_name(name: str) -> str:
    """
    Return ``name`` if it is valid.

    Raises:
        ValidationError: If the name fails validation
    """
    if not is_valid_branch_name(name):
        raise ValidationError.invalid_branch_name(str(name))
    return name


def _parse_date(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    try:
        # git iso8601: "2024-01-15 10:30:00 +0000"
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable ref date: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_ref_line(line: str) -> tuple[str, datetime | None, str, str] | None:
    """
    Split one ``name|date|commit|subject`` record.

    The subject may itself contain ``|``; only the first three separators
    delimit fields.

    Returns:
        Tuple of (name, date, commit, subject), or None for blank or
        malformed lines
    """
    if not line.strip():
        return None
    parts = line.split("|", 3)
    if len(parts) < 3:
        return None
    name = parts[0].strip()
    date = _parse_date(parts[1])
    commit = parts[2].strip()
    subject = parts[3] if len(parts) > 3 else ""
    return name, date, commit, subject


def reconcile_branches(
    local_output: str,
    remote_output: str,
    remote_name: str = "origin",
) -> list[Branch]:
    """
    Build the unified branch list from local and remote ref listings.

    Args:
        local_output: ``for-each-ref refs/heads/`` output
        remote_output: ``for-each-ref refs/remotes/<remote>/`` output
        remote_name: Remote whose prefix is stripped from remote refs

    Returns:
        Branches sorted by date descending, ties broken by name
    """
    branches: dict[str, Branch] = {}

    for line in local_output.splitlines():
        parsed = parse_ref_line(line)
        if parsed is None:
            continue
        name, date, commit, subject = parsed
        if not is_valid_branch_name(name):
            logger.debug(f"Skipping invalid local branch name: {name!r}")
            continue
        branches[name] = Branch(
            name=name,
            commit=commit,
            subject=subject,
            date=date,
            is_local=True,
        )

    prefix = f"{remote_name}/"
    for line in remote_output.splitlines():
        parsed = parse_ref_line(line)
        if parsed is None:
            continue
        full_name, date, commit, subject = parsed
        if not full_name.startswith(prefix):
            continue
        name = full_name[len(prefix):]
        if name == "HEAD" or not is_valid_branch_name(name):
            continue

        existing = branches.get(name)
        if existing is not None:
            existing.has_remote = True
            existing.remote_commit = commit
            existing.remote_date = date
            existing.remote_subject = subject
            existing.has_updates = commit != existing.commit
            if existing.has_updates:
                existing.date = date
                existing.subject = subject
        else:
            branches[name] = Branch(
                name=name,
                commit=commit,
                subject=subject,
                date=date,
                remote_commit=commit,
                remote_date=date,
                remote_subject=subject,
                has_remote=True,
            )

    # Two passes with a stable sort: name ascending, then date descending
    result = sorted(branches.values(), key=lambda b: b.name)
    result.sort(key=lambda b: b.sort_timestamp, reverse=True)
    return result


def detect_branch_changes(
    old: list[Branch],
    new: list[Branch],
) -> dict[str, list[Branch]]:
    """
    Compare two branch lists by name and commit.

    Returns:
        Dict with ``added``, ``deleted`` and ``updated`` lists
    """
    old_by_name = {b.name: b for b in old}
    new_by_name = {b.name: b for b in new}
    return {
        "added": [b for b in new if b.name not in old_by_name],
        "deleted": [b for b in old if b.name not in new_by_name],
        "updated": [
            b
            for b in new
            if b.name in old_by_name and old_by_name[b.name].commit != b.commit
        ],
    }


def generate_sparkline(counts: list[int]) -> str:
    """
    Render commit counts as a block-character sparkline.

    Example:
        >>> generate_sparkline([0, 1, 2, 4])
        '▁▃▅█'
    """
    if not counts:
        return ""
    peak = max(counts)
    if peak <= 0:
        return SPARKLINE_CHARS[0] * len(counts)
    top = len(SPARKLINE_CHARS) - 1
    return "".join(SPARKLINE_CHARS[round(c / peak * top)] for c in counts)


__all__ = [
    "BRANCH_NAME_PATTERN",
    "Branch",
    "MAX_BRANCH_NAME_LENGTH",
    "detect_branch_changes",
    "generate_sparkline",
    "is_valid_branch_name",
    "parse_ref_line",
    "reconcile_branches",
    "sanitize_branch_name",
]
