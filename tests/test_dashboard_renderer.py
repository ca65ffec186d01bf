"""
Unit tests for dashboard renderer.

Tests the Rich-based rendering of a store snapshot.
"""

from datetime import datetime, timedelta, timezone
from io import StringIO

import pytest
from rich.console import Console
from rich.layout import Layout

from watchtower.core.git.pr import PrStatus
from watchtower.core.state.store import StashPrompt, Store
from watchtower.dashboard.renderer import DashboardRenderer, format_age

from .conftest import make_branch


class TestFormatAge:
    """Test format_age."""

    NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(seconds=10), "just now"),
            (timedelta(minutes=5), "5m ago"),
            (timedelta(hours=3), "3h ago"),
            (timedelta(days=2), "2d ago"),
        ],
    )
    def test_buckets(self, delta, expected):
        assert format_age(self.NOW - delta, self.NOW) == expected

    def test_naive_datetime_treated_as_utc(self):
        naive = datetime(2024, 6, 1, 11, 0)
        assert format_age(naive, self.NOW) == "1h ago"

    def test_none(self):
        assert format_age(None) == ""


class TestDashboardRenderer:
    """Test DashboardRenderer class."""

    @pytest.fixture
    def console(self) -> Console:
        """Create a test console with string output."""
        return Console(file=StringIO(), width=140, height=40, legacy_windows=False)

    @pytest.fixture
    def renderer(self, console: Console) -> DashboardRenderer:
        return DashboardRenderer(console=console)

    @pytest.fixture
    def populated(self) -> Store:
        store = Store({"project_name": "demo"})
        store.set_state({"current_branch": "main"})
        store.set_branches(
            [
                make_branch("fresh", "ccc3333", is_new=True),
                make_branch("main", "aaa1111", subject="Initial commit"),
                make_branch("behind", "bbb2222", has_updates=True),
                make_branch("shipped", "ddd4444"),
                make_branch("gone", "eee5555", is_deleted=True),
            ]
        )
        store.set_state(
            {
                "branch_pr_status_map": {"shipped": PrStatus(state="MERGED", number=42)},
                "sparkline_cache": {"main": "▁▃▅█"},
            }
        )
        store.add_log("New branch: fresh", "success")
        return store

    def output(self, renderer, console, state) -> str:
        console.print(renderer.render(state))
        return console.file.getvalue()

    def test_render_returns_layout(self, renderer, populated):
        assert isinstance(renderer.render(populated.get_state()), Layout)

    def test_header_shows_project_and_branch(self, renderer, console, populated):
        text = self.output(renderer, console, populated.get_state())
        assert "GIT WATCHTOWER" in text
        assert "demo" in text
        assert "main" in text
        assert "IDLE" in text

    def test_branch_markers(self, renderer, console, populated):
        text = self.output(renderer, console, populated.get_state())
        for marker in ("★", "✦", "↓", "⇢", "✗"):
            assert marker in text
        assert "#42" in text
        assert "▁▃▅█" in text
        assert "Initial commit" in text

    def test_activity_log(self, renderer, console, populated):
        text = self.output(renderer, console, populated.get_state())
        assert "New branch: fresh" in text

    def test_empty_state(self, renderer, console):
        text = self.output(renderer, console, Store().get_state())
        assert "No branches found" in text
        assert "No activity yet" in text
        assert "Polling every 5s" in text

    def test_offline_and_conflict_badges(self, renderer, console, populated):
        populated.set_state({"is_offline": True, "has_merge_conflict": True})
        text = self.output(renderer, console, populated.get_state())
        assert "OFFLINE" in text
        assert "MERGE CONFLICT" in text

    def test_detached_head(self, renderer, console):
        store = Store()
        store.set_state({"current_branch": "HEAD@abc1234", "is_detached_head": True})
        text = self.output(renderer, console, store.get_state())
        assert "HEAD@abc1234" in text
        assert "(detached)" in text

    def test_visible_window_follows_selection(self, renderer, console):
        store = Store({"visible_branch_count": 3})
        store.set_branches([make_branch(f"branch-{i:02d}") for i in range(10)])
        store.set_selected_index(8)
        text = self.output(renderer, console, store.get_state())
        assert "branch-08" in text
        assert "branch-00" not in text
        assert "(10)" in text


class TestFooter:
    """Test footer priority."""

    @pytest.fixture
    def renderer(self) -> DashboardRenderer:
        return DashboardRenderer(console=Console(file=StringIO(), width=140, height=40))

    def footer_text(self, renderer, store) -> str:
        console = renderer.console
        console.print(renderer._render_footer(store.get_state()))
        return console.file.getvalue()

    def test_toast_beats_flash(self, renderer):
        store = Store()
        store.flash("Switched to dev", "success")
        store.show_error_toast("Network Unavailable", "offline", "Check your internet connection")
        text = self.footer_text(renderer, store)
        assert "Network Unavailable" in text
        assert "Check your internet connection" in text
        assert "Switched to dev" not in text

    def test_stash_prompt_beats_everything(self, renderer):
        store = Store()
        store.show_error_toast("Pull Failed", "x")
        store.set_state(
            {
                "stash_confirm": StashPrompt(
                    operation="switch", branch="feat", message="Local changes block switching to feat."
                ),
                "stash_warning": "Your changes are still in the stash. Run: git stash pop",
            }
        )
        text = self.footer_text(renderer, store)
        assert "Local changes block switching to feat." in text
        assert "Pull Failed" not in text

    def test_stash_warning_beats_toast(self, renderer):
        store = Store()
        store.show_error_toast("Pull Failed", "x")
        store.set_state({"stash_warning": "Your changes are still in the stash. Run: git stash pop"})
        text = self.footer_text(renderer, store)
        assert "git stash pop" in text
        assert "Pull Failed" not in text

    def test_flash_shown(self, renderer):
        store = Store()
        store.flash("Pulled main", "success")
        assert "Pulled main" in self.footer_text(renderer, store)


class TestServerPanel:
    """Test the command-mode server log panel."""

    def test_server_panel_in_command_mode(self):
        console = Console(file=StringIO(), width=140, height=40)
        renderer = DashboardRenderer(console=console)
        store = Store({"server_mode": "command", "port": 5173})
        store.add_server_log("ready in 300ms")
        store.add_server_log("warning: deprecated", is_error=True)
        store.set_state({"server_running": True})

        console.print(renderer.render(store.get_state()))
        text = console.file.getvalue()
        assert ":5173 RUNNING" in text
        assert "ready in 300ms" in text

    def test_crashed_status(self):
        console = Console(file=StringIO(), width=140, height=40)
        renderer = DashboardRenderer(console=console)
        store = Store({"server_mode": "command"})
        store.set_state({"server_crashed": True})
        console.print(renderer.render(store.get_state()))
        assert "CRASHED" in console.file.getvalue()
