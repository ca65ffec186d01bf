"""
Long-lived session context.

WatchSession carries everything that survives from one poll cycle to the
next: the validated config, the store, the git runner, the mutex shared by
the poll loop and user actions, the dev-server manager, the set of branch
names seen so far, last-seen commits, commit-keyed PR/session caches, and
the one-time environment detection.

Build it with ``WatchSession.init()``; nothing reconstructs it implicitly.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel

from watchtower.core.concurrency import Mutex
from watchtower.core.config.models import WatchtowerConfig
from watchtower.core.errors import ErrorHandler
from watchtower.core.git.branches import Branch
from watchtower.core.git.commands import GitRunner
from watchtower.core.git.pr import (
    PrInfo,
    PrStatus,
    check_cli_auth,
    fetch_pr_status_map,
    get_pr_info,
    has_command,
)
from watchtower.core.git.remote import (
    build_branch_url,
    build_web_url,
    detect_platform,
    extract_session_url,
    parse_remote_url,
)
from watchtower.core.server.process import ProcessManager, ProcessState
from watchtower.core.state.store import OperationToken, Store

logger = logging.getLogger(__name__)

V = TypeVar("V")

AGENT_BRANCH_PREFIX = "claude/"
ACTION_DATA_SCOPE = "action_data"


@dataclass(frozen=True)
class EnvironmentInfo:
    """Result of the one-time tool and hosting-platform detection."""

    has_gh: bool = False
    has_glab: bool = False
    gh_authed: bool = False
    glab_authed: bool = False
    web_url_base: str | None = None
    platform: str | None = None

    @property
    def gh_ready(self) -> bool:
        return self.has_gh and self.gh_authed

    @property
    def glab_ready(self) -> bool:
        return self.has_glab and self.glab_authed

    @property
    def can_query_prs(self) -> bool:
        return (self.platform == "github" and self.gh_ready) or (
            self.platform == "gitlab" and self.glab_ready
        )


@dataclass
class _CacheEntry(Generic[V]):
    commit: str
    value: V


class CommitKeyedCache(Generic[V]):
    """
    Per-branch cache invalidated by the branch's commit.

    A lookup whose commit differs from the one stored is a miss, so a value
    computed for an older commit is never returned once the branch moves.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry[V]] = {}

    def lookup(self, name: str, commit: str) -> tuple[bool, V | None]:
        """
        Returns:
            Tuple of (hit, value); value is None on a miss
        """
        entry = self._entries.get(name)
        if entry is None or entry.commit != commit:
            return False, None
        return True, entry.value

    def store(self, name: str, commit: str, value: V) -> None:
        self._entries[name] = _CacheEntry(commit=commit, value=value)

    def invalidate(self, name: str) -> None:
        self._entries.pop(name, None)

    def __len__(self) -> int:
        return len(self._entries)


class ActionData(BaseModel):
    """Everything the action panel shows for one branch."""

    branch: str
    commit: str
    web_url: str | None = None
    session_url: str | None = None
    pr_info: PrInfo | None = None
    pr_loaded: bool = False
    is_agent_branch: bool = False
    platform: str | None = None
    has_gh: bool = False
    has_glab: bool = False
    gh_authed: bool = False
    glab_authed: bool = False


@dataclass
class WatchSession:
    """Context shared by the poll loop, branch actions and stash recovery."""

    config: WatchtowerConfig
    cwd: Path
    store: Store
    runner: GitRunner
    mutex: Mutex
    process_manager: ProcessManager | None
    error_handler: ErrorHandler = field(default_factory=ErrorHandler)
    known_names: set[str] = field(default_factory=set)
    previous_commits: dict[str, str] = field(default_factory=dict)
    pr_cache: CommitKeyedCache[PrInfo | None] = field(default_factory=CommitKeyedCache)
    session_url_cache: CommitKeyedCache[str | None] = field(default_factory=CommitKeyedCache)
    environment: EnvironmentInfo | None = None
    notify_clients: Callable[[], None] | None = None
    on_notify: Callable[[list[str]], None] | None = None

    @classmethod
    def init(
        cls,
        config: WatchtowerConfig,
        cwd: Path | str,
        *,
        store: Store | None = None,
        runner: GitRunner | None = None,
        debug: bool = False,
    ) -> WatchSession:
        """
        Build the session for a repository.

        The store is seeded from config; a ProcessManager is created only in
        command mode and publishes its state into the store.
        """
        cwd = Path(cwd)
        if store is None:
            store = Store(
                {
                    "project_name": cwd.name,
                    "adaptive_poll_interval": config.git_poll_interval,
                    "visible_branch_count": config.visible_branches,
                    "sound_enabled": config.sound_enabled,
                    "server_mode": config.server.mode,
                    "port": config.server.port,
                }
            )

        process_manager = None
        if config.server.mode == "command":

            def on_log(line: str, is_error: bool) -> None:
                store.add_server_log(line, is_error)

            def on_state_change(state: ProcessState) -> None:
                store.set_state(
                    {"server_running": state.running, "server_crashed": state.crashed}
                )

            process_manager = ProcessManager(
                cwd=cwd, on_log=on_log, on_state_change=on_state_change
            )

        return cls(
            config=config,
            cwd=cwd,
            store=store,
            runner=runner or GitRunner(cwd),
            mutex=Mutex(),
            process_manager=process_manager,
            error_handler=ErrorHandler(debug=debug),
        )

    def seed(self, branches: list[Branch]) -> None:
        """Record the initial branch list without flagging anything as new."""
        for branch in branches:
            self.known_names.add(branch.name)
            self.previous_commits[branch.name] = branch.commit

    def fire_notify_clients(self) -> None:
        if self.notify_clients is not None:
            self.notify_clients()

    def fire_on_notify(self, names: list[str]) -> None:
        if self.on_notify is not None:
            self.on_notify(names)

    async def detect_environment(self) -> EnvironmentInfo:
        """
        Detect gh/glab availability and auth, and the repository web URL.

        Runs once; later calls return the cached result.
        """
        if self.environment is not None:
            return self.environment

        has_gh = has_command("gh")
        has_glab = has_command("glab")
        remote_url = await self.runner.get_remote_url(self.config.remote_name)
        web_url_base = build_web_url(parse_remote_url(remote_url))

        gh_authed, glab_authed = await asyncio.gather(
            check_cli_auth("gh") if has_gh else _false(),
            check_cli_auth("glab") if has_glab else _false(),
        )

        self.environment = EnvironmentInfo(
            has_gh=has_gh,
            has_glab=has_glab,
            gh_authed=gh_authed,
            glab_authed=glab_authed,
            web_url_base=web_url_base,
            platform=detect_platform(web_url_base),
        )
        logger.info(f"Environment detected: {self.environment}")
        return self.environment

    async def fetch_all_pr_statuses(self) -> dict[str, PrStatus] | None:
        """Bulk branch -> PR map, or None if no CLI is usable."""
        env = self.environment
        if env is None:
            return None
        return await fetch_pr_status_map(env.platform, env.gh_ready, env.glab_ready, self.cwd)

    def branch_web_url(self, branch_name: str) -> str | None:
        env = self.environment
        if env is None or not env.web_url_base:
            return None
        parsed = parse_remote_url(env.web_url_base)
        host = parsed.host if parsed else ""
        return build_branch_url(env.web_url_base, host, branch_name)

    def gather_local_action_data(self, branch: Branch) -> ActionData:
        """
        Action-panel data available without any subprocess.

        PR info comes from the commit-keyed cache; ``pr_loaded`` is False when
        it still has to be fetched.
        """
        env = self.environment or EnvironmentInfo(platform="github")
        pr_hit, pr_info = self.pr_cache.lookup(branch.name, branch.commit)
        _, session_url = self.session_url_cache.lookup(branch.name, branch.commit)
        return ActionData(
            branch=branch.name,
            commit=branch.commit,
            web_url=self.branch_web_url(branch.name),
            session_url=session_url,
            pr_info=pr_info,
            pr_loaded=pr_hit,
            is_agent_branch=branch.name.startswith(AGENT_BRANCH_PREFIX),
            platform=env.platform,
            has_gh=env.has_gh,
            has_glab=env.has_glab,
            gh_authed=env.gh_authed,
            glab_authed=env.glab_authed,
        )

    def begin_action_data(self) -> OperationToken:
        return self.store.begin_operation(ACTION_DATA_SCOPE)

    async def load_async_action_data(
        self,
        branch: Branch,
        token: OperationToken,
    ) -> ActionData | None:
        """
        Complete action-panel data with lookups that need subprocesses.

        Returns:
            The completed data, or None if a newer lookup superseded this one
            while it was running
        """
        await self.detect_environment()
        data = self.gather_local_action_data(branch)
        env = self.environment or EnvironmentInfo()

        session_url = data.session_url
        if data.is_agent_branch and session_url is None:
            body = await self.runner.last_commit_body(branch.name)
            session_url = extract_session_url(body)
            self.session_url_cache.store(branch.name, branch.commit, session_url)

        pr_info = data.pr_info
        if not data.pr_loaded:
            pr_info = (
                await get_pr_info(
                    branch.name, env.platform, env.gh_ready, env.glab_ready, self.cwd
                )
                if env.can_query_prs
                else None
            )
            self.pr_cache.store(branch.name, branch.commit, pr_info)

        if not self.store.is_current(token):
            logger.debug(f"Discarding stale action data for {branch.name}")
            return None

        return data.model_copy(
            update={
                "web_url": data.web_url or self.branch_web_url(branch.name),
                "session_url": session_url,
                "pr_info": pr_info,
                "pr_loaded": True,
            }
        )


async def _false() -> bool:
    return False


__all__ = [
    "ActionData",
    "CommitKeyedCache",
    "EnvironmentInfo",
    "WatchSession",
]
