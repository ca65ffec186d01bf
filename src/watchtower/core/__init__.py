"""Core watchtower logic, independent of the CLI and the dashboard view."""
