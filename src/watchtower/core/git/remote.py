"""
Remote URL parsing and web URL building.

Turns ``git remote get-url`` output (SSH, HTTPS or ssh:// form) into a
browsable repository URL, and a branch name into the hosting service's
branch page.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote, urlparse


@dataclass(frozen=True)
class ParsedRemote:
    """Host and repository path extracted from a remote URL."""

    host: str
    path: str


_SSH_RE = re.compile(r"^[\w-]+@([^:]+):(.+?)(?:\.git)?$")
_HTTP_RE = re.compile(r"^https?://([^/]+)/(.+?)(?:\.git)?$")
_SSH_PROTO_RE = re.compile(r"^ssh://[\w-]+@([^/:]+)(?::\d+)?/(.+?)(?:\.git)?$")
_CODECOMMIT_RE = re.compile(r"codecommit\..+\.amazonaws\.com")
_SESSION_URL_RE = re.compile(r"https://claude\.ai/code/session_\w+")


def parse_remote_url(remote_url: str | None) -> ParsedRemote | None:
    """
    Parse a git remote URL.

    Example:
        >>> parse_remote_url("git@github.com:user/repo.git")
        ParsedRemote(host='github.com', path='user/repo')
    """
    url = (remote_url or "").strip()
    for pattern in (_SSH_RE, _HTTP_RE, _SSH_PROTO_RE):
        match = pattern.match(url)
        if match:
            return ParsedRemote(host=match.group(1), path=match.group(2))
    return None


def build_branch_url(base_url: str, host: str, branch_name: str) -> str:
    """Build the hosting service's URL for viewing a branch."""
    branch = quote(branch_name, safe="")

    if host == "dev.azure.com" or host.endswith(".visualstudio.com"):
        return f"{base_url}?version=GB{branch}"
    if host == "bitbucket.org":
        return f"{base_url}/src/{branch}"
    if _CODECOMMIT_RE.search(host):
        return f"{base_url}/browse/refs/heads/{branch}"
    # GitHub, GitLab, Gitea, Forgejo, SourceHut and most self-hosted services
    return f"{base_url}/tree/{branch}"


def detect_platform(web_url: str | None) -> str | None:
    """
    Guess the hosting platform from a repository web URL.

    Returns:
        'github', 'gitlab', 'bitbucket' or 'azure'; 'github' for unknown
        hosts; None if there is no URL
    """
    if not web_url:
        return None
    host = urlparse(web_url).hostname or ""
    if "github" in host:
        return "github"
    if "gitlab" in host:
        return "gitlab"
    if "bitbucket" in host:
        return "bitbucket"
    if host == "dev.azure.com" or "visualstudio.com" in host:
        return "azure"
    return "github"


def build_web_url(parsed: ParsedRemote | None, branch_name: str | None = None) -> str | None:
    """
    Build the repository (or branch) web URL from a parsed remote.

    Azure DevOps SSH remotes (``ssh.dev.azure.com:v3/org/project/repo``) are
    rewritten to their ``dev.azure.com/org/project/_git/repo`` web form.
    """
    if parsed is None:
        return None

    if parsed.host == "ssh.dev.azure.com":
        parts = re.sub(r"^v3/", "", parsed.path).split("/")
        if len(parts) < 3:
            return None
        base_url = f"https://dev.azure.com/{parts[0]}/{parts[1]}/_git/{'/'.join(parts[2:])}"
        host = "dev.azure.com"
    else:
        base_url = f"https://{parsed.host}/{parsed.path}"
        host = parsed.host

    if branch_name:
        return build_branch_url(base_url, host, branch_name)
    return base_url


def extract_session_url(commit_body: str | None) -> str | None:
    """Find an agent session URL in a commit message body."""
    match = _SESSION_URL_RE.search(commit_body or "")
    return match.group(0) if match else None


__all__ = [
    "ParsedRemote",
    "build_branch_url",
    "build_web_url",
    "detect_platform",
    "extract_session_url",
    "parse_remote_url",
]
