"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars

Project config lives in ``.watchtowerrc.json`` at the repository root. Older
flat-format files (``noServer``, ``port``, ``staticDir`` at top level) are
migrated on load.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from watchtower.core.errors import ConfigError

from .models import WatchtowerConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".watchtowerrc.json"

# Global cache to avoid reloading config multiple times per session
_config_cache: WatchtowerConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """Path to ~/.config/watchtower/config.json (or XDG equivalent)."""
    return get_xdg_config_home() / "watchtower" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """Path to .watchtowerrc.json in the project root."""
    if cwd is None:
        cwd = Path.cwd()
    return cwd / CONFIG_FILE_NAME


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`. Nested dicts
    are merged, not replaced.

    Example:
        >>> deep_merge({"server": {"port": 3000}}, {"server": {"mode": "command"}})
        {'server': {'port': 3000, 'mode': 'command'}}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON object from a file.

    Returns:
        Parsed dict, or None if the file does not exist

    Raises:
        ConfigError: If the file cannot be read or is not a JSON object
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError.parse_error(e) from e
    except OSError as e:
        raise ConfigError(
            f"Failed to read configuration: {e}",
            "CONFIG_READ_ERROR",
            {"path": str(path)},
        ) from e

    if not isinstance(data, dict):
        raise ConfigError.invalid(f"{path} must contain a JSON object", {"path": str(path)})
    return data


def migrate_legacy_config(data: dict[str, Any]) -> dict[str, Any]:
    """
    Convert a flat legacy config into the nested format.

    Files that already have a ``server`` section are returned unchanged.
    """
    if "server" in data:
        return data

    server: dict[str, Any] = {}
    if data.get("noServer"):
        server["mode"] = "none"
    if "port" in data:
        server["port"] = data["port"]
    if "staticDir" in data:
        server["staticDir"] = data["staticDir"]

    migrated: dict[str, Any] = {"server": server}
    for key in ("gitPollInterval", "visibleBranches", "remoteName", "autoPull"):
        if key in data:
            migrated[key] = data[key]
    if isinstance(data.get("soundEnabled"), bool):
        migrated["soundEnabled"] = data["soundEnabled"]

    logger.info("Migrated legacy flat configuration format")
    return migrated


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Supported env vars:
        WATCHTOWER_REMOTE - overrides remoteName
        WATCHTOWER_POLL_INTERVAL - overrides gitPollInterval (ms)
        WATCHTOWER_AUTO_PULL - overrides autoPull
        WATCHTOWER_SERVER_COMMAND - sets server.command and command mode
    """
    result = config_dict.copy()

    if remote := os.environ.get("WATCHTOWER_REMOTE"):
        result["remoteName"] = remote

    if interval_str := os.environ.get("WATCHTOWER_POLL_INTERVAL"):
        try:
            result["gitPollInterval"] = int(interval_str)
        except ValueError:
            logger.warning(f"Invalid WATCHTOWER_POLL_INTERVAL value '{interval_str}', ignoring")

    if auto_pull_str := os.environ.get("WATCHTOWER_AUTO_PULL"):
        result["autoPull"] = auto_pull_str.lower() not in ("false", "0", "no", "")

    if command := os.environ.get("WATCHTOWER_SERVER_COMMAND"):
        server = dict(result.get("server") or {})
        server["command"] = command
        server["mode"] = "command"
        result["server"] = server

    return result


def get_default_config() -> dict[str, Any]:
    """Hardcoded defaults, in file (camelCase) form."""
    return WatchtowerConfig().to_file_dict()


def validate_config(data: dict[str, Any]) -> WatchtowerConfig:
    """
    Validate a merged config dict.

    Raises:
        ConfigError: With the first pydantic error as the reason
    """
    try:
        return WatchtowerConfig.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ConfigError.invalid(
            f"{location}: {first['msg']}", {"errors": e.errors(include_url=False)}
        ) from e


def load_project_config(project_dir: Path | None = None) -> dict[str, Any] | None:
    """Read and migrate .watchtowerrc.json, or None if there is none."""
    data = load_json_file(get_project_config_path(project_dir))
    if data is None:
        return None
    return migrate_legacy_config(data)


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> WatchtowerConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (WATCHTOWER_*)
        2. Project config (.watchtowerrc.json)
        3. User config (~/.config/watchtower/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .watchtowerrc.json from
        use_cache: If True, return cached config from previous load

    Returns:
        Validated WatchtowerConfig

    Raises:
        ConfigError: If a file is unreadable or the merged config is invalid
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, migrate_legacy_config(user_config))

    if project_config := load_project_config(project_dir):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = validate_config(merged)
    _config_cache = config
    return config


def save_config(config: WatchtowerConfig, project_dir: Path | None = None) -> Path:
    """
    Write the project config file.

    Returns:
        Path written

    Raises:
        ConfigError: If the file cannot be written
    """
    path = get_project_config_path(project_dir)
    try:
        path.write_text(json.dumps(config.to_file_dict(), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            f"Failed to save configuration: {e}",
            "CONFIG_WRITE_ERROR",
            {"path": str(path)},
        ) from e
    clear_cache()
    return path


def delete_config(project_dir: Path | None = None) -> bool:
    """Remove the project config file. Returns False if there was none."""
    path = get_project_config_path(project_dir)
    if not path.exists():
        return False
    path.unlink()
    clear_cache()
    return True


def config_exists(project_dir: Path | None = None) -> bool:
    return get_project_config_path(project_dir).exists()


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
