"""Terminal dashboard view of the store."""

from watchtower.dashboard.renderer import DashboardRenderer

__all__ = ["DashboardRenderer"]
