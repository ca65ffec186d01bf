"""
The live dashboard: poll loop, dev server and Rich view until interrupted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from watchtower.cli.errors import ExitCode
from watchtower.core.actions import BranchActions
from watchtower.core.concurrency import Debouncer
from watchtower.core.interrupt import InterruptHandler
from watchtower.core.polling import PollLoop
from watchtower.core.session import WatchSession
from watchtower.dashboard.renderer import DashboardRenderer

logger = logging.getLogger(__name__)

FLASH_DURATION = 3.0
TOAST_DURATION = 8.0
SPARKLINE_TICK = 60.0


async def _refresh_sparklines_forever(actions: BranchActions) -> None:
    while True:
        await actions.refresh_sparklines()
        await asyncio.sleep(SPARKLINE_TICK)


async def run_dashboard(session: WatchSession, renderer: DashboardRenderer | None = None) -> int:
    """
    Run the dashboard until the first SIGINT/SIGTERM.

    Returns:
        Exit code
    """
    renderer = renderer or DashboardRenderer()
    store = session.store
    poll_loop = PollLoop(session)
    actions = BranchActions(session)
    handler = InterruptHandler()
    handler.register(asyncio.get_running_loop())

    clear_flash = Debouncer(store.clear_flash, FLASH_DURATION)
    hide_toast = Debouncer(store.hide_error_toast, TOAST_DURATION)

    def on_notify(names: list[str]) -> None:
        if store.get("sound_enabled"):
            renderer.console.bell()

    session.on_notify = on_notify

    def on_transient(prev: dict[str, Any], new: dict[str, Any]) -> None:
        if new["flash_message"] is not None and new["flash_message"] is not prev["flash_message"]:
            clear_flash()
        if new["error_toast"] is not None and new["error_toast"] is not prev["error_toast"]:
            hide_toast()

    unsubscribe_transient = store.subscribe_to_keys(["flash_message", "error_toast"], on_transient)

    manager = session.process_manager
    background: list[asyncio.Task[Any]] = []
    try:
        await poll_loop.start()
        background.append(asyncio.create_task(session.detect_environment()))
        background.append(asyncio.create_task(_refresh_sparklines_forever(actions)))

        if manager is not None:
            result = await manager.start(session.config.server.command)
            if not result.success:
                store.add_log(f"Server failed to start: {result.error}", "error")

        with renderer.start_live(store.get_state()) as live:

            def redraw(prev: dict[str, Any], new: dict[str, Any], changed: list[str]) -> None:
                live.update(renderer.render(new))

            unsubscribe_redraw = store.subscribe(redraw)
            try:
                await handler.wait()
            finally:
                unsubscribe_redraw()
    finally:
        unsubscribe_transient()
        clear_flash.cancel()
        hide_toast.cancel()
        await poll_loop.stop()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        if manager is not None:
            await manager.stop()
        handler.unregister()
        logger.info("Dashboard stopped")

    return ExitCode.SUCCESS
