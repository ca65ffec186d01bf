"""Dev-server process supervision."""

from watchtower.core.server.process import ProcessManager, ProcessState, StartResult, parse_command

__all__ = ["ProcessManager", "ProcessState", "StartResult", "parse_command"]
