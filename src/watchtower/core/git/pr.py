"""
Pull/merge request status via the ``gh`` and ``glab`` CLIs.

Both tools are treated as opaque: watchtower runs them, parses their JSON
and ignores any failure (not installed, not authenticated, offline). PR data
is decoration on the branch list, never required for a poll cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import sys
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

IS_UNIX = sys.platform != "win32"

CLI_TIMEOUT = 30.0
BULK_PR_LIMIT = 200

BASE_BRANCH_RE = re.compile(
    r"^(main|master|develop|development|staging|production|trunk|release)$"
)


class PrInfo(BaseModel):
    """Detailed status of the newest PR/MR for one branch."""

    number: int
    title: str = ""
    state: str = "OPEN"
    approved: bool = False
    checks_pass: bool = False
    checks_fail: bool = False
    checks_count: int = 0


class PrStatus(BaseModel):
    """Summary entry in the bulk branch -> PR map."""

    state: str
    number: int
    title: str = ""


def is_base_branch(name: str) -> bool:
    """Whether a branch is a default/base branch that never counts as merged."""
    return bool(BASE_BRANCH_RE.match(name))


def _gitlab_state(state: str | None) -> str:
    if state == "merged":
        return "MERGED"
    if state == "opened":
        return "OPEN"
    return "CLOSED"


def parse_github_pr(prs: list[dict[str, Any]] | None) -> PrInfo | None:
    """Normalize ``gh pr list --json ...`` output for a single branch."""
    if not prs:
        return None
    pr = prs[0]
    checks = pr.get("statusCheckRollup") or []
    return PrInfo(
        number=pr["number"],
        title=pr.get("title", ""),
        state=pr.get("state", "OPEN"),
        approved=pr.get("reviewDecision") == "APPROVED",
        checks_pass=bool(checks) and all(c.get("conclusion") == "SUCCESS" for c in checks),
        checks_fail=any(c.get("conclusion") == "FAILURE" for c in checks),
        checks_count=len(checks),
    )


def parse_gitlab_mr(mrs: list[dict[str, Any]] | None) -> PrInfo | None:
    """Normalize ``glab mr list --output json`` output for a single branch."""
    if not mrs:
        return None
    mr = mrs[0]
    return PrInfo(
        number=mr["iid"],
        title=mr.get("title", ""),
        state=_gitlab_state(mr.get("state")),
    )


def parse_github_pr_list(prs: Any) -> dict[str, PrStatus]:
    """
    Build a branch -> PR map from a bulk ``gh pr list``.

    When a branch has several PRs the highest-numbered one wins.
    """
    result: dict[str, PrStatus] = {}
    if not isinstance(prs, list):
        return result
    for pr in prs:
        branch = pr.get("headRefName")
        if not branch:
            continue
        existing = result.get(branch)
        if existing is None or pr["number"] > existing.number:
            result[branch] = PrStatus(
                state=pr.get("state", "OPEN"),
                number=pr["number"],
                title=pr.get("title", ""),
            )
    return result


def parse_gitlab_mr_list(mrs: Any) -> dict[str, PrStatus]:
    """Build a branch -> MR map from a bulk ``glab mr list``."""
    result: dict[str, PrStatus] = {}
    if not isinstance(mrs, list):
        return result
    for mr in mrs:
        branch = mr.get("source_branch")
        if not branch:
            continue
        existing = result.get(branch)
        if existing is None or mr["iid"] > existing.number:
            result[branch] = PrStatus(
                state=_gitlab_state(mr.get("state")),
                number=mr["iid"],
                title=mr.get("title", ""),
            )
    return result


def has_command(name: str) -> bool:
    """Whether an executable is on PATH."""
    return shutil.which(name) is not None


async def run_cli(
    argv: list[str],
    cwd: Path | str | None = None,
    timeout: float = CLI_TIMEOUT,
) -> str | None:
    """
    Run an external CLI and return its stdout, or None on any failure.

    Args:
        argv: Command and arguments
        cwd: Working directory
        timeout: Time budget in seconds
    """
    kwargs: dict[str, Any] = {
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.DEVNULL,
        "cwd": str(cwd) if cwd is not None else None,
    }
    if IS_UNIX:
        kwargs["start_new_session"] = True

    try:
        process = await asyncio.create_subprocess_exec(*argv, **kwargs)
    except (FileNotFoundError, PermissionError) as e:
        logger.debug(f"Cannot run {argv[0]}: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.debug(f"Timed out after {timeout}s: {' '.join(argv)}")
        return None

    if process.returncode != 0:
        logger.debug(f"{argv[0]} exited with {process.returncode}")
        return None
    return stdout.decode("utf-8", errors="replace")


async def _run_json(argv: list[str], cwd: Path | str | None) -> Any:
    stdout = await run_cli(argv, cwd=cwd)
    if stdout is None:
        return None
    try:
        return json.loads(stdout)
    except json.JSONDecodeError:
        logger.debug(f"Non-JSON output from {argv[0]}")
        return None


async def check_cli_auth(name: str) -> bool:
    """Whether ``gh``/``glab`` reports an authenticated session."""
    return await run_cli([name, "auth", "status"], timeout=10.0) is not None


async def get_pr_info(
    branch_name: str,
    platform: str | None,
    gh_ready: bool,
    glab_ready: bool,
    cwd: Path | str | None = None,
) -> PrInfo | None:
    """
    Look up the newest PR/MR for one branch.

    Args:
        branch_name: Validated branch name
        platform: Hosting platform from detect_platform()
        gh_ready: gh is installed and authenticated
        glab_ready: glab is installed and authenticated
        cwd: Repository directory
    """
    if platform == "github" and gh_ready:
        data = await _run_json(
            [
                "gh", "pr", "list",
                "--head", branch_name,
                "--state", "all",
                "--json", "number,title,state,reviewDecision,statusCheckRollup",
                "--limit", "1",
            ],
            cwd,
        )
        return parse_github_pr(data) if isinstance(data, list) else None
    if platform == "gitlab" and glab_ready:
        data = await _run_json(
            [
                "glab", "mr", "list",
                f"--source-branch={branch_name}",
                "--state", "all",
                "--output", "json",
            ],
            cwd,
        )
        return parse_gitlab_mr(data) if isinstance(data, list) else None
    return None


async def fetch_pr_status_map(
    platform: str | None,
    gh_ready: bool,
    glab_ready: bool,
    cwd: Path | str | None = None,
) -> dict[str, PrStatus] | None:
    """
    Fetch the bulk branch -> PR status map.

    Returns:
        The map, or None when no CLI is usable or the call failed
    """
    if platform == "github" and gh_ready:
        data = await _run_json(
            [
                "gh", "pr", "list",
                "--state", "all",
                "--json", "headRefName,number,title,state",
                "--limit", str(BULK_PR_LIMIT),
            ],
            cwd,
        )
        return parse_github_pr_list(data) if data is not None else None
    if platform == "gitlab" and glab_ready:
        data = await _run_json(
            ["glab", "mr", "list", "--state", "all", "--output", "json"],
            cwd,
        )
        return parse_gitlab_mr_list(data) if data is not None else None
    return None


__all__ = [
    "BASE_BRANCH_RE",
    "PrInfo",
    "PrStatus",
    "check_cli_auth",
    "fetch_pr_status_map",
    "get_pr_info",
    "has_command",
    "is_base_branch",
    "parse_github_pr",
    "parse_github_pr_list",
    "parse_gitlab_mr",
    "parse_gitlab_mr_list",
    "run_cli",
]
