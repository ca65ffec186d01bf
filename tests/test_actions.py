"""
Tests for BranchActions: switch, pull, undo, delete and preview queries.
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from watchtower.core.actions import BranchActions
from watchtower.core.config.models import ServerConfig, WatchtowerConfig
from watchtower.core.errors import GitError
from watchtower.core.git.commands import DiffStats, GitRunner, OperationResult
from watchtower.core.recovery import PendingDirtyOperation, RecoveryOutcome
from watchtower.core.server.process import StartResult
from watchtower.core.session import WatchSession

from .conftest import git, make_branch, requires_git

DIRTY = (
    "error: Your local changes to the following files would be overwritten by checkout:\n"
    "\tapp.py\nPlease commit your changes or stash them before you switch branches."
)


def failed(message: str) -> OperationResult:
    return OperationResult(success=False, error=GitError(message))


@pytest.fixture
def actions(session):
    session.store.set_state({"current_branch": "main"})
    session.store.set_branches(
        [
            make_branch("main", "aaa1111", is_local=True, has_remote=True),
            make_branch("feat", "bbb2222", has_remote=True, is_new=True),
            make_branch("local-only", "ccc3333", is_local=True),
        ]
    )
    return BranchActions(session, clock=lambda: 1000.0)


def branch_named(session, name):
    return next(b for b in session.store.get("branches") if b.name == name)


# ==============================================================================
# Switch
# ==============================================================================


class TestSwitch:
    """Tests for switch_to_branch."""

    @pytest.mark.asyncio
    async def test_switch_success(self, actions, session, mock_runner):
        clients = MagicMock()
        session.notify_clients = clients

        result = await actions.switch_to_branch("feat")

        assert result.success
        mock_runner.checkout.assert_awaited_once_with("feat", "origin")
        assert session.store.get("current_branch") == "feat"
        feat = branch_named(session, "feat")
        assert feat.is_local
        assert not feat.is_new
        last = session.store.get_last_switch()
        assert (last.from_branch, last.to_branch) == ("main", "feat")
        assert session.store.get("flash_message").text == "Switched to feat"
        clients.assert_called_once()
        assert not session.mutex.locked()

    @pytest.mark.asyncio
    async def test_already_on_branch(self, actions, session, mock_runner):
        result = await actions.switch_to_branch("main")
        assert result.success
        mock_runner.checkout.assert_not_awaited()
        assert session.store.get("flash_message").text == "Already on main"

    @pytest.mark.asyncio
    async def test_invalid_name_rejected(self, actions, session, mock_runner):
        result = await actions.switch_to_branch("bad..name")
        assert not result.success
        mock_runner.checkout.assert_not_awaited()
        assert session.store.get("flash_message").type == "error"

    @pytest.mark.asyncio
    async def test_failure_shows_toast(self, actions, session, mock_runner):
        mock_runner.checkout.return_value = failed("error: pathspec 'feat' did not match")
        result = await actions.switch_to_branch("feat")

        assert not result.success
        assert not result.needs_stash
        assert session.store.get("error_toast").title == "Branch Switch Failed"
        assert session.store.get("current_branch") == "main"

    @pytest.mark.asyncio
    async def test_dirty_tree_parks_operation(self, actions, session, mock_runner):
        mock_runner.checkout.return_value = failed(DIRTY)
        result = await actions.switch_to_branch("feat")

        assert result.needs_stash
        assert session.store.get("error_toast") is None
        prompt = session.store.get("stash_confirm")
        assert prompt.operation == "switch"
        assert prompt.branch == "feat"
        assert actions.recovery.pending.branch == "feat"

    @pytest.mark.asyncio
    async def test_dirty_tree_detected_before_checkout(self, actions, session, mock_runner):
        mock_runner.has_uncommitted_changes.return_value = True
        result = await actions.switch_to_branch("feat")

        assert result.needs_stash
        assert result.error.code == "GIT_DIRTY_WORKDIR"
        mock_runner.checkout.assert_not_awaited()
        assert actions.recovery.pending == PendingDirtyOperation("switch", "feat")
        assert session.store.get("current_branch") == "main"
        assert not session.mutex.locked()

    @pytest.mark.asyncio
    async def test_status_failure_falls_back_to_checkout(self, actions, session, mock_runner):
        mock_runner.has_uncommitted_changes.side_effect = GitError("fatal: index file corrupt")
        result = await actions.switch_to_branch("feat")
        assert result.success
        mock_runner.checkout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_clears_merge_conflict(self, actions, session):
        session.store.set_state({"has_merge_conflict": True})
        await actions.switch_to_branch("feat")
        assert not session.store.get("has_merge_conflict")

    @pytest.mark.asyncio
    async def test_switch_restarts_command_server(self, mock_runner):
        config = WatchtowerConfig(server=ServerConfig(mode="command", command="npm run dev"))
        session = WatchSession.init(config, Path("/repo"), runner=mock_runner)
        session.store.set_state({"current_branch": "main"})
        session.process_manager.restart = AsyncMock(return_value=StartResult(success=True, pid=1))

        await BranchActions(session).switch_to_branch("feat")
        session.process_manager.restart.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_restart_when_disabled(self, mock_runner):
        config = WatchtowerConfig(
            server=ServerConfig(mode="command", command="npm run dev", restart_on_switch=False)
        )
        session = WatchSession.init(config, Path("/repo"), runner=mock_runner)
        session.store.set_state({"current_branch": "main"})
        session.process_manager.restart = AsyncMock()

        await BranchActions(session).switch_to_branch("feat")
        session.process_manager.restart.assert_not_awaited()


# ==============================================================================
# Pull
# ==============================================================================


class TestPull:
    """Tests for pull_current_branch."""

    @pytest.mark.asyncio
    async def test_pull_success(self, actions, session, mock_runner):
        session.store.set_branches(
            [make_branch("main", "aaa1111", is_local=True, has_remote=True, has_updates=True)]
        )
        result = await actions.pull_current_branch()

        assert result.success
        mock_runner.pull.assert_awaited_once_with("origin", "main")
        main = branch_named(session, "main")
        assert not main.has_updates
        assert main.commit == "def5678"
        assert session.previous_commits["main"] == "def5678"

    @pytest.mark.asyncio
    async def test_detached_head(self, actions, session, mock_runner):
        session.store.set_state({"is_detached_head": True})
        result = await actions.pull_current_branch()
        assert not result.success
        mock_runner.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conflict(self, actions, session, mock_runner):
        mock_runner.pull.return_value = failed("CONFLICT (content): Merge conflict in a.py")
        result = await actions.pull_current_branch()
        assert not result.success
        assert session.store.get("has_merge_conflict")
        assert session.store.get("error_toast").title == "Merge Conflict!"

    @pytest.mark.asyncio
    async def test_dirty_pull_parks(self, actions, session, mock_runner):
        mock_runner.pull.return_value = failed(
            "error: Your local changes to the following files would be overwritten by merge"
        )
        result = await actions.pull_current_branch()
        assert result.needs_stash
        assert session.store.get("stash_confirm").operation == "pull"

    @pytest.mark.asyncio
    async def test_other_failure(self, actions, session, mock_runner):
        mock_runner.pull.return_value = failed("fatal: couldn't find remote ref main")
        result = await actions.pull_current_branch()
        assert not result.success
        assert session.store.get("error_toast").title == "Pull Failed"


# ==============================================================================
# Undo and Delete
# ==============================================================================


class TestUndo:
    """Tests for undo_last_switch."""

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, actions):
        result = await actions.undo_last_switch()
        assert not result.success

    @pytest.mark.asyncio
    async def test_undo_returns_and_pops(self, actions, session, mock_runner):
        await actions.switch_to_branch("feat")
        result = await actions.undo_last_switch()

        assert result.success
        assert session.store.get("current_branch") == "main"
        assert session.store.get("switch_history") == []
        assert mock_runner.checkout.await_args.args[0] == "main"

    @pytest.mark.asyncio
    async def test_failed_undo_keeps_history(self, actions, session, mock_runner):
        await actions.switch_to_branch("feat")
        mock_runner.checkout.return_value = failed("fatal: something broke")
        result = await actions.undo_last_switch()
        assert not result.success
        assert len(session.store.get("switch_history")) == 1


class TestDelete:
    """Tests for delete_branch."""

    @pytest.mark.asyncio
    async def test_cannot_delete_current(self, actions, mock_runner):
        result = await actions.delete_branch("main")
        assert not result.success
        mock_runner.delete_local_branch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_only_removed(self, actions, session, mock_runner):
        session.seed(session.store.get("branches"))
        result = await actions.delete_branch("local-only", force=True)

        assert result.success
        mock_runner.delete_local_branch.assert_awaited_once_with("local-only", force=True)
        assert "local-only" not in [b.name for b in session.store.get("branches")]
        assert "local-only" not in session.known_names
        assert "local-only" not in session.previous_commits

    @pytest.mark.asyncio
    async def test_remote_tracked_becomes_remote_only(self, actions, session):
        session.store.set_state({"current_branch": "feat"})
        result = await actions.delete_branch("main")
        assert result.success
        main = branch_named(session, "main")
        assert not main.is_local
        assert main.has_remote

    @pytest.mark.asyncio
    async def test_delete_failure(self, actions, session, mock_runner):
        mock_runner.delete_local_branch.return_value = failed(
            "error: The branch 'local-only' is not fully merged."
        )
        result = await actions.delete_branch("local-only")
        assert not result.success
        assert "local-only" in [b.name for b in session.store.get("branches")]


# ==============================================================================
# Read-only Queries
# ==============================================================================


class TestPreview:
    """Tests for get_preview_data."""

    @pytest.mark.asyncio
    async def test_preview_collects_history(self, actions, mock_runner):
        mock_runner.log.return_value = ["bbb2222 Add feature", "aaa1111 Initial"]
        mock_runner.changed_files.return_value = [f"file{i}.py" for i in range(30)]
        mock_runner.get_diff_stats = AsyncMock(return_value=DiffStats(added=12, deleted=4))

        preview = await actions.get_preview_data("feat")

        assert preview.branch == "feat"
        assert preview.commits == ["bbb2222 Add feature", "aaa1111 Initial"]
        assert len(preview.files) == 20
        assert preview.diff_stats == DiffStats(added=12, deleted=4)
        mock_runner.log.assert_awaited_once_with("feat", count=5)
        mock_runner.get_diff_stats.assert_awaited_once_with("HEAD", "feat")


class TestSparklines:
    """Tests for refresh_sparklines."""

    @pytest.mark.asyncio
    async def test_refresh_and_throttle(self, actions, session, mock_runner):
        mock_runner.commits_by_day.return_value = [0, 0, 1, 2, 0, 0, 4]

        assert await actions.refresh_sparklines()
        cache = session.store.get("sparkline_cache")
        assert set(cache) == {"main", "feat", "local-only"}
        assert cache["main"] == "▁▁▃▅▁▁█"

        refs = [call.args[0] for call in mock_runner.commits_by_day.await_args_list]
        assert "origin/feat" in refs
        assert "main" in refs

        assert not await actions.refresh_sparklines()
        assert await actions.refresh_sparklines(force=True)

    @pytest.mark.asyncio
    async def test_deleted_branches_skipped(self, actions, session, mock_runner):
        session.store.set_branches([make_branch("gone", is_deleted=True)])
        await actions.refresh_sparklines()
        mock_runner.commits_by_day.assert_not_awaited()


# ==============================================================================
# Real Repository
# ==============================================================================


@requires_git
@pytest.mark.git
class TestUntrackedFiles:
    """An untracked file that git would carry along still blocks a switch."""

    @pytest.fixture
    def real_session(self, remote_repo):
        work, _ = remote_repo
        git(work, "branch", "feature-a")
        (work / "untracked.txt").write_text("scratch\n")
        session = WatchSession.init(WatchtowerConfig(), work, runner=GitRunner(work))
        session.store.set_state({"current_branch": "main"})
        return session

    @pytest.mark.asyncio
    async def test_switch_parks_and_keeps_branch(self, real_session):
        actions = BranchActions(real_session)
        result = await actions.switch_to_branch("feature-a")

        assert not result.success
        assert result.needs_stash
        assert result.error.is_dirty_workdir()
        assert actions.recovery.pending == PendingDirtyOperation("switch", "feature-a")
        assert git(real_session.cwd, "rev-parse", "--abbrev-ref", "HEAD") == "main"
        assert (real_session.cwd / "untracked.txt").exists()

    @pytest.mark.asyncio
    async def test_confirm_stashes_and_switches(self, real_session):
        actions = BranchActions(real_session)
        await actions.switch_to_branch("feature-a")

        assert await actions.recovery.confirm() is RecoveryOutcome.RETRIED
        assert git(real_session.cwd, "rev-parse", "--abbrev-ref", "HEAD") == "feature-a"
        assert not (real_session.cwd / "untracked.txt").exists()
        assert "auto-stash before switching to feature-a" in git(real_session.cwd, "stash", "list")
