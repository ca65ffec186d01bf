"""
Failure classification for git diagnostic output.

Git reports failures as free-form text on stderr. This module buckets that
text into a small set of categories the rest of watchtower acts on:

- NETWORK: remote unreachable (counts toward the offline flag)
- AUTH: credentials rejected
- MERGE_CONFLICT: pull left conflicts behind (blocks auto-pull)
- DIRTY_WORKDIR: local changes block a ref change (hands off to stash recovery)
- TIMEOUT / NOT_FOUND: assigned by the command layer, never by text matching
- GENERIC: anything else; the raw message is shown as-is

This is a best-effort heuristic over another program's output. The phrases
change across git versions and locales, so the table below is data with a
version tag and its own tests, and unmatched text always degrades to GENERIC
rather than to a guessed recovery path.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Failure categories for git operations."""

    NETWORK = "network"
    AUTH = "auth"
    MERGE_CONFLICT = "merge_conflict"
    DIRTY_WORKDIR = "dirty_workdir"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    GENERIC = "generic"


@dataclass(frozen=True)
class ClassificationRule:
    """
    One row of the classification table.

    Attributes:
        category: Category assigned when any pattern matches
        patterns: Substrings searched for in the message and stderr
        case_sensitive: Whether matching respects case
    """

    category: ErrorCategory
    patterns: tuple[str, ...]
    case_sensitive: bool = False

    def matches(self, text: str) -> bool:
        if self.case_sensitive:
            return any(p in text for p in self.patterns)
        lowered = text.lower()
        return any(p.lower() in lowered for p in self.patterns)


CLASSIFIER_VERSION = "git-2.x/en-1"

# Checked in order; first match wins. Merge markers come first because a
# conflicted pull also mentions local changes in some git versions.
CLASSIFICATION_TABLE: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ErrorCategory.MERGE_CONFLICT,
        (
            "CONFLICT",
            "Automatic merge failed",
            "fix conflicts",
            "Merge conflict",
        ),
        case_sensitive=True,
    ),
    ClassificationRule(
        ErrorCategory.DIRTY_WORKDIR,
        (
            "Your local changes",
            "local changes",
            "uncommitted changes",
            "Please commit your changes",
            "overwritten by checkout",
            "would be overwritten",
        ),
    ),
    ClassificationRule(
        ErrorCategory.AUTH,
        (
            "Authentication failed",
            "Permission denied",
            "Invalid username or password",
            "could not read Username",
            "fatal: Authentication",
        ),
    ),
    ClassificationRule(
        ErrorCategory.NETWORK,
        (
            "Could not resolve host",
            "Connection refused",
            "Connection timed out",
            "Network is unreachable",
            "fatal: unable to access",
            "SSL certificate problem",
        ),
    ),
)

REMEDIATION_HINTS: dict[ErrorCategory, tuple[str, str]] = {
    ErrorCategory.NETWORK: ("Network Error", "Check your internet connection"),
    ErrorCategory.AUTH: ("Authentication Failed", "Check your Git credentials"),
    ErrorCategory.MERGE_CONFLICT: ("Merge Conflict!", "Run: git status to see conflicts"),
    ErrorCategory.DIRTY_WORKDIR: (
        "Uncommitted Changes",
        "Commit or stash your changes first",
    ),
    ErrorCategory.TIMEOUT: ("Git Timed Out", "The remote may be slow; try again shortly"),
    ErrorCategory.NOT_FOUND: ("Git Not Found", "Install git and make sure it is on PATH"),
    ErrorCategory.GENERIC: ("Git Operation Failed", "Check the activity log for details"),
}

USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "Network error - check your connection",
    ErrorCategory.AUTH: "Authentication failed - check credentials",
    ErrorCategory.MERGE_CONFLICT: "Merge conflict - resolve conflicts first",
    ErrorCategory.DIRTY_WORKDIR: "Uncommitted changes - commit or stash first",
    ErrorCategory.TIMEOUT: "Git command timed out",
    ErrorCategory.NOT_FOUND: "Git is not installed or not in PATH",
}


def classify(message: str, stderr: str = "") -> ErrorCategory:
    """
    Classify a failure from its message and stderr text.

    Args:
        message: Error message (often the stderr itself)
        stderr: Raw stderr from the subprocess, if separate

    Returns:
        The first matching category, or GENERIC

    Example:
        >>> classify("fatal: unable to access 'https://...': Could not resolve host")
        <ErrorCategory.NETWORK: 'network'>
    """
    text = f"{message or ''}\n{stderr or ''}"
    for rule in CLASSIFICATION_TABLE:
        if rule.matches(text):
            return rule.category
    return ErrorCategory.GENERIC


def remediation_hint(category: ErrorCategory) -> str:
    """Get the remediation hint shown to the operator for a category."""
    return REMEDIATION_HINTS[category][1]


def describe(category: ErrorCategory) -> tuple[str, str]:
    """
    Get the toast title and remediation hint for a category.

    Returns:
        Tuple of (title, hint)
    """
    return REMEDIATION_HINTS[category]


__all__ = [
    "CLASSIFICATION_TABLE",
    "CLASSIFIER_VERSION",
    "ClassificationRule",
    "ErrorCategory",
    "REMEDIATION_HINTS",
    "USER_MESSAGES",
    "classify",
    "describe",
    "remediation_hint",
]
