"""
Interrupt handling for clean shutdown of the dashboard.

The handler implements a two-stage interrupt model:
1. First interrupt: sets the shutdown event so the dashboard stops polling,
   stops the dev server and restores the terminal
2. Second interrupt: force exits with SystemExit(130)

Usage:
    >>> handler = InterruptHandler()
    >>> handler.register(asyncio.get_running_loop())
    >>> await handler.wait()  # returns on the first SIGINT/SIGTERM
    >>> handler.unregister()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

FORCED_EXIT_CODE = 130


class InterruptHandler:
    """
    Handles SIGINT/SIGTERM for the asyncio event loop.

    Uses ``loop.add_signal_handler`` where the platform supports it and falls
    back to ``signal.signal`` elsewhere.

    Attributes:
        interrupted: True once an interrupt has been received
    """

    def __init__(self) -> None:
        self._interrupted = False
        self._event = asyncio.Event()
        self._cleanup_callbacks: list[Callable[[], None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_signals: list[int] = []
        self._original_handlers: dict[int, Any] = {}

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def register(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Install handlers for SIGINT and SIGTERM."""
        self._loop = loop
        for sig in (signal.SIGINT, signal.SIGTERM):
            if loop is not None:
                try:
                    loop.add_signal_handler(sig, self._handle_signal, sig, None)
                    self._loop_signals.append(sig)
                    continue
                except (NotImplementedError, RuntimeError):
                    pass
            self._original_handlers[sig] = signal.signal(sig, self._handle_signal)

    def unregister(self) -> None:
        """Restore the handlers that were in place before ``register``."""
        if self._loop is not None:
            for sig in self._loop_signals:
                self._loop.remove_signal_handler(sig)
        self._loop_signals.clear()
        for sig, original in self._original_handlers.items():
            signal.signal(sig, original)
        self._original_handlers.clear()

    def on_interrupt(self, callback: Callable[[], None]) -> None:
        """Register a callback run once, on the first interrupt."""
        self._cleanup_callbacks.append(callback)

    async def wait(self) -> None:
        """Block until the first interrupt."""
        await self._event.wait()

    def _handle_signal(self, signum: int, frame: object) -> None:
        if self._interrupted:
            self._write_to_stderr("\n[Force exiting...]\n")
            raise SystemExit(FORCED_EXIT_CODE)

        self._interrupted = True
        self._event.set()
        logger.info(f"Received signal {signum}, shutting down")

        for callback in self._cleanup_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Interrupt callback failed")

    @staticmethod
    def _write_to_stderr(message: str) -> None:
        """Write to stderr directly; Rich may own the terminal at this point."""
        sys.stderr.write(message)
        sys.stderr.flush()


__all__ = ["FORCED_EXIT_CODE", "InterruptHandler"]
