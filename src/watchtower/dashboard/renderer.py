"""
Rich-based dashboard renderer for watchtower.

Turns a store snapshot into a Rich Layout. The renderer only reads the
snapshot; it never calls git or writes to the store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from rich.console import Console, Group, RenderableType
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from watchtower.core.git.branches import Branch
from watchtower.core.polling.engine import is_merged

Snapshot = dict[str, Any]

LOG_STYLES = {
    "info": "",
    "success": "green",
    "warning": "yellow",
    "error": "bold red",
    "update": "cyan",
}

POLLING_STYLES = {
    "idle": "green",
    "fetching": "cyan",
    "reconciling": "cyan",
    "auto_pulling": "magenta",
    "error": "red",
}

SERVER_LOG_TAIL = 8


def format_age(when: datetime | None, now: datetime | None = None) -> str:
    """
    Compact relative age.

    Example:
        >>> now = datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)
        >>> format_age(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), now)
        '5m ago'
    """
    if when is None:
        return ""
    now = now or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    seconds = int((now - when).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


class DashboardRenderer:
    """
    Render the watchtower dashboard using Rich.

    The dashboard displays:
    - Header: project, current branch, polling status, offline/conflict badges
    - Branches: the visible window of the ordered branch list
    - Activity log: recent entries, newest first
    - Server log: tail of the dev-server output (command mode only)
    - Footer: flash message, error toast or stash prompt

    Example:
        >>> renderer = DashboardRenderer()
        >>> layout = renderer.render(store.get_state())
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render(self, state: Snapshot) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=3),
        )

        if state["server_mode"] == "command":
            layout["body"].split_row(
                Layout(name="branches", ratio=3),
                Layout(name="side", ratio=2),
            )
            layout["side"].split_column(
                Layout(name="activity"),
                Layout(name="server"),
            )
            layout["server"].update(self._render_server_log(state))
        else:
            layout["body"].split_column(
                Layout(name="branches"),
                Layout(name="activity", size=state["max_log_entries"] + 2),
            )

        layout["header"].update(self._render_header(state))
        layout["branches"].update(self._render_branches(state))
        layout["activity"].update(self._render_activity_log(state))
        layout["footer"].update(self._render_footer(state))
        return layout

    def _render_header(self, state: Snapshot) -> Panel:
        header = Text()
        header.append("GIT WATCHTOWER", style="bold cyan")
        if state["project_name"]:
            header.append(f"  {state['project_name']}", style="bold")

        current = state["current_branch"] or "(unknown)"
        header.append("  on ")
        header.append(current, style="bold yellow" if state["is_detached_head"] else "bold green")
        if state["is_detached_head"]:
            header.append(" (detached)", style="yellow")

        status = state["polling_status"]
        header.append("  ")
        header.append(status.replace("_", " ").upper(), style=POLLING_STYLES.get(status, "white"))

        if state["is_offline"]:
            header.append("  OFFLINE", style="bold red")
        if state["has_merge_conflict"]:
            header.append("  MERGE CONFLICT", style="bold red")

        border = "red" if state["is_offline"] or state["has_merge_conflict"] else "cyan"
        return Panel(header, border_style=border, padding=(0, 1))

    def _branch_marker(self, branch: Branch, state: Snapshot) -> Text:
        if branch.name == state["current_branch"]:
            return Text("★", style="bold green")
        if branch.is_deleted:
            return Text("✗", style="dim red")
        if is_merged(branch, state["branch_pr_status_map"]):
            return Text("⇢", style="magenta")
        if branch.is_new:
            return Text("✦", style="bold cyan")
        if branch.just_updated:
            return Text("↻", style="bold yellow")
        if branch.has_updates:
            return Text("↓", style="yellow")
        return Text(" ")

    def _render_branches(self, state: Snapshot) -> Panel:
        branches: list[Branch] = state["branches"]
        query = state["search_query"].lower()
        if query:
            branches = [b for b in branches if query in b.name.lower()]

        if not branches:
            return Panel(
                Text("No branches found", style="dim italic", justify="center"),
                title="[bold]Branches[/bold]",
                border_style="blue",
            )

        visible = state["visible_branch_count"]
        selected = min(state["selected_index"], len(branches) - 1)
        start = max(0, min(selected - visible // 2, len(branches) - visible))
        window = branches[start : start + visible]
        sparklines: dict[str, str] = state["sparkline_cache"]
        pr_map = state["branch_pr_status_map"]

        table = Table.grid(padding=(0, 1), expand=True)
        table.add_column(width=1)
        table.add_column(ratio=3, no_wrap=True)
        table.add_column(style="dim", width=8)
        table.add_column(width=7)
        table.add_column(style="dim", ratio=2, no_wrap=True)
        table.add_column(style="dim", width=9, justify="right")

        for offset, branch in enumerate(window):
            style = "reverse" if start + offset == selected else ""
            if branch.is_deleted:
                style = f"{style} dim strike".strip()
            name = Text(branch.name, style=style)
            pr = pr_map.get(branch.name)
            if pr is not None:
                name.append(f" #{pr.number}", style="magenta")
            table.add_row(
                self._branch_marker(branch, state),
                name,
                branch.commit,
                Text(sparklines.get(branch.name, ""), style="green"),
                branch.subject,
                format_age(branch.date),
            )

        title = f"[bold]Branches[/bold] ({len(branches)})"
        return Panel(table, title=title, border_style="blue", padding=(0, 1))

    def _render_activity_log(self, state: Snapshot) -> Panel:
        entries = state["activity_log"]
        if not entries:
            content: RenderableType = Text("No activity yet", style="dim italic", justify="center")
        else:
            table = Table.grid(padding=(0, 1))
            table.add_column(style="dim", width=8)
            table.add_column()
            for entry in reversed(entries):
                table.add_row(
                    entry.timestamp.strftime("%H:%M:%S"),
                    Text(entry.message, style=LOG_STYLES.get(entry.type, "")),
                )
            content = table

        return Panel(content, title="[bold]Activity[/bold]", border_style="yellow", padding=(0, 1))

    def _render_server_log(self, state: Snapshot) -> Panel:
        if state["server_crashed"]:
            status, border = "CRASHED", "red"
        elif state["server_running"]:
            status, border = "RUNNING", "green"
        else:
            status, border = "STOPPED", "dim"

        lines = state["server_logs"][-SERVER_LOG_TAIL:]
        if lines:
            content: RenderableType = Group(
                *(Text(line.line, style="red" if line.is_error else "") for line in lines)
            )
        else:
            content = Text("No server output", style="dim italic")

        title = f"[bold]Server[/bold] :{state['port']} {status}"
        return Panel(content, title=title, border_style=border, padding=(0, 1))

    def _render_footer(self, state: Snapshot) -> Panel:
        if state["stash_confirm"] is not None:
            prompt = state["stash_confirm"]
            return Panel(
                Text(f"{prompt.message}  [y] stash  [n] cancel", style="bold yellow"),
                border_style="yellow",
            )
        if state["stash_warning"]:
            return Panel(Text(state["stash_warning"], style="bold red"), border_style="red")
        toast = state["error_toast"]
        if toast is not None:
            text = Text()
            text.append(f"{toast.title}: ", style="bold red")
            text.append(toast.message)
            if toast.hint:
                text.append(f"  ({toast.hint})", style="dim")
            return Panel(text, border_style="red")
        flash = state["flash_message"]
        if flash is not None:
            return Panel(Text(flash.text, style=LOG_STYLES.get(flash.type, "")), border_style="dim")

        interval = state["adaptive_poll_interval"] / 1000
        hint = f"Polling every {interval:g}s  |  last fetch {state['last_fetch_duration']}ms"
        return Panel(Text(hint, style="dim"), border_style="dim")

    def start_live(self, state: Snapshot) -> Live:
        """
        Start a Live display that auto-refreshes.

        Args:
            state: Initial store snapshot

        Returns:
            Live context manager for updating the display
        """
        return Live(
            self.render(state),
            console=self.console,
            refresh_per_second=4,
            screen=False,
        )


__all__ = ["DashboardRenderer", "format_age"]
