"""
Pytest configuration and shared fixtures.

Provides fixtures for sample branches and config, a store and a session
wired to a mocked GitRunner, and real temporary git repositories (a working
clone plus a bare remote) for integration tests.
"""

import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from watchtower.core.config import clear_cache
from watchtower.core.config.models import WatchtowerConfig
from watchtower.core.git.branches import Branch
from watchtower.core.git.commands import FetchResult, GitRunner, OperationResult
from watchtower.core.session import WatchSession
from watchtower.core.state.store import Store

GIT_AVAILABLE = shutil.which("git") is not None

requires_git = pytest.mark.skipif(not GIT_AVAILABLE, reason="git is not installed")


# ==============================================================================
# Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep user config, logs and WATCHTOWER_* variables out of every test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    for var in (
        "WATCHTOWER_REMOTE",
        "WATCHTOWER_POLL_INTERVAL",
        "WATCHTOWER_AUTO_PULL",
        "WATCHTOWER_SERVER_COMMAND",
        "GH_TOKEN",
    ):
        # setenv first so teardown also removes values loaded from .env files
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    clear_cache()
    yield
    clear_cache()


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_branch(name: str, commit: str = "abc1234", minutes_ago: int = 0, **kwargs) -> Branch:
    """Build a Branch dated ``minutes_ago`` before NOW."""
    return Branch(
        name=name,
        commit=commit,
        subject=kwargs.pop("subject", f"Work on {name}"),
        date=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


def ref_line(name: str, commit: str, minutes_ago: int = 0, subject: str = "msg") -> str:
    """One line of for-each-ref output in the reconciliation format."""
    date = (NOW - timedelta(minutes=minutes_ago)).strftime("%Y-%m-%d %H:%M:%S %z")
    return f"{name}|{date}|{commit}|{subject}"


@pytest.fixture
def sample_config():
    return WatchtowerConfig()


@pytest.fixture
def store():
    return Store()


# ==============================================================================
# Mocked Runner Fixtures
# ==============================================================================


@pytest.fixture
def mock_runner():
    """
    A GitRunner whose methods are AsyncMocks with quiet, successful defaults.

    Tests override return values per call as needed.
    """
    runner = MagicMock(spec=GitRunner)
    runner.cwd = Path("/repo")
    runner.current_branch = AsyncMock(return_value=("main", False))
    runner.fetch = AsyncMock(return_value=FetchResult(success=True, duration_ms=100))
    runner.list_refs = AsyncMock(return_value="")
    runner.pull = AsyncMock(return_value=OperationResult(success=True))
    runner.checkout = AsyncMock(return_value=OperationResult(success=True))
    runner.stash = AsyncMock(return_value=OperationResult(success=True))
    runner.stash_pop = AsyncMock(return_value=OperationResult(success=True))
    runner.delete_local_branch = AsyncMock(return_value=OperationResult(success=True))
    runner.has_uncommitted_changes = AsyncMock(return_value=False)
    runner.short_head = AsyncMock(return_value="def5678")
    runner.previous_branch = AsyncMock(return_value=None)
    runner.get_remote_url = AsyncMock(return_value=None)
    runner.last_commit_body = AsyncMock(return_value="")
    runner.log = AsyncMock(return_value=[])
    runner.changed_files = AsyncMock(return_value=[])
    runner.commits_by_day = AsyncMock(return_value=[0] * 7)
    return runner


@pytest.fixture
def session(sample_config, mock_runner):
    """A WatchSession on a mocked runner, without a process manager."""
    return WatchSession.init(sample_config, Path("/repo"), runner=mock_runner)


# ==============================================================================
# Real Repository Fixtures
# ==============================================================================


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and return stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "--short", "HEAD")


def _configure_identity(repo: Path) -> None:
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Dev")
    git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture
def remote_repo(tmp_path):
    """
    A bare remote and a working clone with one commit on main.

    Returns:
        Tuple of (work_dir, bare_dir)
    """
    if not GIT_AVAILABLE:
        pytest.skip("git is not installed")

    bare = tmp_path / "remote.git"
    git(tmp_path, "init", "-q", "--bare", "-b", "main", str(bare))

    work = tmp_path / "work"
    work.mkdir()
    git(work, "init", "-q", "-b", "main")
    _configure_identity(work)
    git(work, "remote", "add", "origin", str(bare))
    commit_file(work, "README.md", "hello\n", "Initial commit")
    git(work, "push", "-q", "-u", "origin", "main")
    return work, bare


@pytest.fixture
def other_clone(tmp_path, remote_repo):
    """A second clone of the bare remote, standing in for a collaborator."""
    _, bare = remote_repo
    other = tmp_path / "other"
    git(tmp_path, "clone", "-q", str(bare), str(other))
    _configure_identity(other)
    return other
