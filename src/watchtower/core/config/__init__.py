"""
Configuration models and loading.

Pydantic models for watchtower configuration with multi-layer merging:
defaults < user < project < env vars.
"""

from .env import load_layered_env
from .loader import (
    clear_cache,
    config_exists,
    delete_config,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
    load_project_config,
    save_config,
)
from .models import ServerConfig, WatchtowerConfig

__all__ = [
    # Models
    "ServerConfig",
    "WatchtowerConfig",
    # Loader functions
    "clear_cache",
    "config_exists",
    "delete_config",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
    "load_layered_env",
    "load_project_config",
    "save_config",
]
