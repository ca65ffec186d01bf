"""
Dev-server process lifecycle management.

ProcessManager supervises one user-supplied long-running command:

- the command line is split respecting quotes and run as an argument vector
  (no shell except on Windows)
- stdout/stderr are captured line by line into a 500-line ring buffer,
  stderr lines tagged as errors
- stop() sends SIGTERM to the process group, then SIGKILL if the process is
  still alive after the grace period
- a non-zero exit the manager did not ask for sets a sticky crashed flag

Starting while a process is live always stops it first; there is never more
than one child per manager.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections import deque
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from watchtower.core.errors import ServerError

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"
IS_UNIX = not IS_WINDOWS

MAX_LOG_LINES = 500
KILL_GRACE_PERIOD = 3.0
RESTART_DELAY = 0.5

STREAM_LIMIT = 1024 * 1024


class StartResult(BaseModel):
    """Outcome of ProcessManager.start()."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    pid: int | None = None
    error: ServerError | None = None


class LogLine(BaseModel):
    line: str
    is_error: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)


class ProcessState(BaseModel):
    """Snapshot handed to the state-change callback."""

    running: bool
    crashed: bool
    pid: int | None = None
    command: str = ""
    logs: list[LogLine] = Field(default_factory=list)


def parse_command(command_line: str) -> tuple[str, list[str]]:
    """
    Split a command line into command and arguments.

    Single and double quotes group words; the quote characters themselves
    are dropped. No escapes or variable expansion.

    Example:
        >>> parse_command('npm run dev -- --title "My App"')
        ('npm', ['run', 'dev', '--', '--title', 'My App'])
    """
    parts: list[str] = []
    current = ""
    quote: str | None = None

    for char in command_line:
        if quote is None and char in ("'", '"'):
            quote = char
        elif quote is not None and char == quote:
            quote = None
        elif char == " " and quote is None:
            if current:
                parts.append(current)
                current = ""
        else:
            current += char

    if current:
        parts.append(current)

    if not parts:
        return "", []
    return parts[0], parts[1:]


class ProcessManager:
    """
    Supervise a single dev-server child process.

    Example:
        >>> manager = ProcessManager(cwd="/path/to/project")
        >>> result = await manager.start("npm run dev")
        >>> ...
        >>> await manager.stop()
    """

    def __init__(
        self,
        cwd: Path | str | None = None,
        on_log: Callable[[str, bool], None] | None = None,
        on_state_change: Callable[[ProcessState], None] | None = None,
    ) -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.on_log = on_log
        self.on_state_change = on_state_change

        self.command = ""
        self.logs: deque[LogLine] = deque(maxlen=MAX_LOG_LINES)
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._running = False
        self._crashed = False
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_crashed(self) -> bool:
        return self._crashed

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def get_state(self) -> ProcessState:
        return ProcessState(
            running=self._running,
            crashed=self._crashed,
            pid=self.pid,
            command=self.command,
            logs=list(self.logs),
        )

    def add_log(self, line: str, is_error: bool = False) -> None:
        self.logs.append(LogLine(line=line, is_error=is_error))
        if self.on_log is not None:
            self.on_log(line, is_error)

    def clear_logs(self) -> None:
        self.logs.clear()

    def _notify_state_change(self) -> None:
        if self.on_state_change is not None:
            try:
                self.on_state_change(self.get_state())
            except Exception:
                logger.exception("Process state-change callback failed")

    async def start(self, command_line: str) -> StartResult:
        """
        Start the command, stopping any live instance first.

        Failures are reported in the result, never raised.
        """
        if not command_line or not command_line.strip():
            return StartResult(
                success=False,
                error=ServerError.start_failed(command_line or "", "No command specified"),
            )

        if self._process is not None:
            await self.stop()

        self.clear_logs()
        self._crashed = False
        self._running = False
        self._stopping = False
        self.command = command_line
        self.add_log(f"$ {command_line}")

        command, args = parse_command(command_line)
        if not command:
            self._crashed = True
            self.add_log("Failed to start: Invalid command", is_error=True)
            self._notify_state_change()
            return StartResult(
                success=False,
                error=ServerError.start_failed(command_line, "Invalid command"),
            )

        env = os.environ.copy()
        env["FORCE_COLOR"] = "1"
        kwargs: dict[str, Any] = {
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "stdin": asyncio.subprocess.DEVNULL,
            "cwd": str(self.cwd),
            "env": env,
            "limit": STREAM_LIMIT,
        }

        try:
            if IS_WINDOWS:
                process = await asyncio.create_subprocess_shell(command_line, **kwargs)
            else:
                process = await asyncio.create_subprocess_exec(
                    command, *args, start_new_session=True, **kwargs
                )
        except OSError as e:
            self._crashed = True
            self.add_log(f"Failed to start: {e}", is_error=True)
            self._notify_state_change()
            logger.error(f"Failed to start dev server '{command_line}': {e}")
            return StartResult(
                success=False,
                error=ServerError.start_failed(command_line, str(e)),
            )

        self._process = process
        self._running = True
        self._watcher = asyncio.create_task(self._watch(process))
        logger.info(f"Started dev server (pid {process.pid}): {command_line}")
        self._notify_state_change()
        return StartResult(success=True, pid=process.pid)

    async def _read_lines(self, stream: asyncio.StreamReader | None, is_error: bool) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line:
                self.add_log(line, is_error=is_error)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        await asyncio.gather(
            self._read_lines(process.stdout, False),
            self._read_lines(process.stderr, True),
        )
        code = await process.wait()

        if self._process is process:
            self._process = None
            self._running = False

        # Negative codes are signal deaths
        if code > 0 and not self._stopping:
            self._crashed = True
            self.add_log(f"Process exited with code {code}", is_error=True)
            logger.warning(f"Dev server exited with code {code}")
        else:
            self.add_log("Process stopped")
        self._notify_state_change()

    def _send_signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if IS_UNIX:
                os.killpg(os.getpgid(process.pid), sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"Signal {sig} not delivered (process may be dead): {e}")

    async def stop(self) -> bool:
        """
        Stop the live process.

        Sends SIGTERM and waits up to KILL_GRACE_PERIOD seconds before
        sending SIGKILL. A process that exits within the grace period never
        receives SIGKILL.

        Returns:
            True if there was a process to stop
        """
        process = self._process
        if process is None:
            return False

        self._stopping = True
        if process.returncode is None:
            self._send_signal(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_PERIOD)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Dev server (pid {process.pid}) ignored SIGTERM for "
                    f"{KILL_GRACE_PERIOD}s, sending SIGKILL"
                )
                self._send_signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
                await process.wait()

        await self.wait_closed()
        self._process = None
        self._running = False
        self._notify_state_change()
        return True

    async def restart(self) -> StartResult:
        """Stop, wait RESTART_DELAY seconds, then start the last command."""
        command = self.command
        await self.stop()
        await asyncio.sleep(RESTART_DELAY)
        return await self.start(command)

    async def wait_closed(self) -> None:
        """Wait until output capture for the last process has finished."""
        watcher = self._watcher
        if watcher is not None:
            await asyncio.shield(watcher)
            self._watcher = None


__all__ = [
    "KILL_GRACE_PERIOD",
    "LogLine",
    "MAX_LOG_LINES",
    "ProcessManager",
    "ProcessState",
    "RESTART_DELAY",
    "StartResult",
    "parse_command",
]
