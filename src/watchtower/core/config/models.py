"""
Configuration data models for watchtower.

These models define the structure of .watchtowerrc.json and
~/.config/watchtower/config.json. Files use camelCase keys
(``gitPollInterval``, ``server.restartOnSwitch``); the models expose
snake_case attributes and accept either spelling.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ServerMode = Literal["static", "command", "none"]

MIN_POLL_INTERVAL_MS = 1_000
MAX_POLL_INTERVAL_MS = 300_000


class ServerConfig(BaseModel):
    """
    Dev-server settings.

    ``command`` mode supervises a user command (e.g. ``npm run dev``).
    ``static`` and ``none`` run no child process.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mode: ServerMode = Field(
        default="none",
        description="Server mode: static, command, or none",
    )
    static_dir: str = Field(
        default="public",
        description="Directory served in static mode",
    )
    command: str = Field(
        default="",
        description="Command line run in command mode",
    )
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        description="Port the dev server listens on",
    )
    restart_on_switch: bool = Field(
        default=True,
        description="Restart the command-mode server after a branch switch",
    )


class WatchtowerConfig(BaseModel):
    """
    Main watchtower configuration.

    Example:
        >>> config = WatchtowerConfig(gitPollInterval=10000)
        >>> config.git_poll_interval
        10000
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    server: ServerConfig = Field(default_factory=ServerConfig)
    remote_name: str = Field(
        default="origin",
        min_length=1,
        description="Remote whose branches are watched",
    )
    auto_pull: bool = Field(
        default=True,
        description="Pull the current branch automatically when the remote moves",
    )
    git_poll_interval: int = Field(
        default=5000,
        ge=MIN_POLL_INTERVAL_MS,
        le=MAX_POLL_INTERVAL_MS,
        description="Baseline poll interval in milliseconds",
    )
    sound_enabled: bool = Field(
        default=True,
        description="Ring the terminal bell on remote updates",
    )
    visible_branches: int = Field(
        default=7,
        ge=1,
        le=50,
        description="Branch rows shown in the dashboard",
    )
    casino_mode: bool = Field(
        default=False,
        description="Accepted for file compatibility; has no effect",
    )

    @field_validator("remote_name")
    @classmethod
    def _strip_remote_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("remoteName must be a non-empty string")
        return v

    def to_file_dict(self) -> dict[str, object]:
        """Serialize with camelCase keys, as written to config files."""
        return self.model_dump(by_alias=True)
