"""
Unit tests for configuration loader.

Tests multi-layer config merging, legacy migration, environment variable
overrides, .env layering, caching, and XDG directory handling.
"""

import json
import os
from pathlib import Path

import pytest

from watchtower.core.config import (
    clear_cache,
    config_exists,
    delete_config,
    get_project_config_path,
    get_user_config_path,
    load_config,
    load_layered_env,
    save_config,
)
from watchtower.core.config.loader import (
    apply_env_overrides,
    deep_merge,
    get_default_config,
    get_xdg_config_home,
    load_json_file,
    migrate_legacy_config,
    validate_config,
)
from watchtower.core.config.models import ServerConfig, WatchtowerConfig
from watchtower.core.errors import ConfigError


def write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


# ==============================================================================
# Helper Functions Tests
# ==============================================================================


class TestDeepMerge:
    """Test the deep_merge helper function."""

    def test_nested_merge(self):
        """Test merging nested dicts."""
        base = {"a": 1, "server": {"port": 3000, "mode": "none"}}
        override = {"server": {"mode": "command"}, "c": 3}
        result = deep_merge(base, override)
        assert result == {"a": 1, "server": {"port": 3000, "mode": "command"}, "c": 3}

    def test_override_replaces_non_dict(self):
        """Test that non-dict values are replaced, not merged."""
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_base_not_mutated(self):
        base = {"server": {"port": 1}}
        deep_merge(base, {"server": {"port": 2}})
        assert base == {"server": {"port": 1}}


class TestLoadJsonFile:
    """Test JSON file loading."""

    def test_missing_file(self, tmp_path):
        assert load_json_file(tmp_path / "nope.json") is None

    def test_valid_object(self, tmp_path):
        path = tmp_path / "c.json"
        write_json(path, {"remoteName": "upstream"})
        assert load_json_file(path) == {"remoteName": "upstream"}

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError) as exc_info:
            load_json_file(path)
        assert exc_info.value.code == "CONFIG_PARSE_ERROR"

    def test_non_object(self, tmp_path):
        path = tmp_path / "c.json"
        write_json(path, [1, 2, 3])
        with pytest.raises(ConfigError) as exc_info:
            load_json_file(path)
        assert exc_info.value.code == "CONFIG_INVALID"


class TestXdgPaths:
    """Test XDG directory handling."""

    def test_xdg_config_home_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
        assert get_xdg_config_home() == tmp_path / "cfg"
        assert get_user_config_path() == tmp_path / "cfg" / "watchtower" / "config.json"

    def test_xdg_config_home_default(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert get_xdg_config_home() == Path.home() / ".config"

    def test_project_config_path(self, tmp_path):
        assert get_project_config_path(tmp_path) == tmp_path / ".watchtowerrc.json"


# ==============================================================================
# Models and Validation
# ==============================================================================


class TestModels:
    """Test config model defaults and aliases."""

    def test_defaults(self):
        config = WatchtowerConfig()
        assert config.remote_name == "origin"
        assert config.auto_pull is True
        assert config.git_poll_interval == 5000
        assert config.visible_branches == 7
        assert config.server.mode == "none"
        assert config.server.restart_on_switch is True

    def test_camel_case_aliases(self):
        config = WatchtowerConfig.model_validate(
            {"gitPollInterval": 10000, "server": {"restartOnSwitch": False, "staticDir": "dist"}}
        )
        assert config.git_poll_interval == 10000
        assert config.server.restart_on_switch is False
        assert config.server.static_dir == "dist"

    def test_file_dict_uses_camel_case(self):
        data = WatchtowerConfig().to_file_dict()
        assert "gitPollInterval" in data
        assert "restartOnSwitch" in data["server"]

    def test_remote_name_stripped(self):
        assert WatchtowerConfig(remote_name="  upstream ").remote_name == "upstream"

    @pytest.mark.parametrize(
        "data",
        [
            {"gitPollInterval": 999},
            {"gitPollInterval": 300_001},
            {"remoteName": "   "},
            {"server": {"port": 0}},
            {"server": {"port": 70000}},
            {"server": {"mode": "docker"}},
            {"visibleBranches": 0},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError) as exc_info:
            validate_config(data)
        assert exc_info.value.code == "CONFIG_INVALID"

    def test_invalid_reason_names_field(self):
        with pytest.raises(ConfigError, match="gitPollInterval"):
            validate_config({"gitPollInterval": 5})

    def test_casino_mode_accepted(self):
        assert WatchtowerConfig.model_validate({"casinoMode": True}).casino_mode is True


class TestMigrateLegacyConfig:
    """Test legacy flat-format migration."""

    def test_nested_config_unchanged(self):
        data = {"server": {"mode": "command"}, "port": 1}
        assert migrate_legacy_config(data) is data

    def test_flat_config_migrated(self):
        migrated = migrate_legacy_config(
            {
                "noServer": True,
                "port": 8080,
                "staticDir": "www",
                "gitPollInterval": 10000,
                "soundEnabled": False,
                "unknownKey": 1,
            }
        )
        assert migrated["server"] == {"mode": "none", "port": 8080, "staticDir": "www"}
        assert migrated["gitPollInterval"] == 10000
        assert migrated["soundEnabled"] is False
        assert "unknownKey" not in migrated

    def test_non_bool_sound_dropped(self):
        assert "soundEnabled" not in migrate_legacy_config({"soundEnabled": "yes"})


# ==============================================================================
# Environment Overrides
# ==============================================================================


class TestApplyEnvOverrides:
    """Test WATCHTOWER_* environment overrides."""

    def test_remote_and_interval(self, monkeypatch):
        monkeypatch.setenv("WATCHTOWER_REMOTE", "upstream")
        monkeypatch.setenv("WATCHTOWER_POLL_INTERVAL", "15000")
        result = apply_env_overrides({})
        assert result == {"remoteName": "upstream", "gitPollInterval": 15000}

    def test_invalid_interval_ignored(self, monkeypatch):
        monkeypatch.setenv("WATCHTOWER_POLL_INTERVAL", "fast")
        assert "gitPollInterval" not in apply_env_overrides({})

    @pytest.mark.parametrize("value,expected", [("false", False), ("0", False), ("no", False), ("true", True), ("1", True)])
    def test_auto_pull(self, monkeypatch, value, expected):
        monkeypatch.setenv("WATCHTOWER_AUTO_PULL", value)
        assert apply_env_overrides({})["autoPull"] is expected

    def test_server_command_switches_mode(self, monkeypatch):
        monkeypatch.setenv("WATCHTOWER_SERVER_COMMAND", "npm run dev")
        result = apply_env_overrides({"server": {"port": 4000, "mode": "static"}})
        assert result["server"] == {"port": 4000, "mode": "command", "command": "npm run dev"}

    def test_input_not_mutated(self, monkeypatch):
        monkeypatch.setenv("WATCHTOWER_SERVER_COMMAND", "make serve")
        original = {"server": {"mode": "none"}}
        apply_env_overrides(original)
        assert original == {"server": {"mode": "none"}}


class TestLoadLayeredEnv:
    """Test .env file layering."""

    def test_project_env_loaded(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("WATCHTOWER_REMOTE=upstream\n")
        loaded = load_layered_env(project_dir=tmp_path, user_env_paths=[])
        assert loaded == {"WATCHTOWER_REMOTE"}
        assert os.environ["WATCHTOWER_REMOTE"] == "upstream"

    def test_shell_variable_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WATCHTOWER_REMOTE", "from-shell")
        (tmp_path / ".env").write_text("WATCHTOWER_REMOTE=from-file\n")
        assert load_layered_env(project_dir=tmp_path, user_env_paths=[]) == set()
        assert os.environ["WATCHTOWER_REMOTE"] == "from-shell"

    def test_project_overrides_user(self, tmp_path, monkeypatch):
        user_env = tmp_path / "user.env"
        user_env.write_text("WATCHTOWER_POLL_INTERVAL=9000\n")
        project = tmp_path / "project"
        project.mkdir()
        (project / ".env.local").write_text("WATCHTOWER_POLL_INTERVAL=12000\n")

        load_layered_env(project_dir=project, user_env_paths=[user_env])
        assert os.environ["WATCHTOWER_POLL_INTERVAL"] == "12000"

    def test_only_watchtower_and_cli_token_keys(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        (tmp_path / ".env").write_text(
            "DATABASE_URL=postgres://localhost/app\nGH_TOKEN=ghp_test\nWATCHTOWER_REMOTE=upstream\n"
        )

        loaded = load_layered_env(project_dir=tmp_path, user_env_paths=[])

        assert loaded == {"GH_TOKEN", "WATCHTOWER_REMOTE"}
        assert "DATABASE_URL" not in os.environ

    def test_env_local_overrides_env(self, tmp_path):
        (tmp_path / ".env").write_text("WATCHTOWER_REMOTE=first\n")
        (tmp_path / ".env.local").write_text("WATCHTOWER_REMOTE=second\n")
        load_layered_env(project_dir=tmp_path, user_env_paths=[])
        assert os.environ["WATCHTOWER_REMOTE"] == "second"


# ==============================================================================
# load_config
# ==============================================================================


class TestLoadConfig:
    """Test the full precedence chain."""

    def test_defaults_only(self, tmp_path):
        config = load_config(tmp_path, use_cache=False)
        assert config == WatchtowerConfig()
        assert get_default_config() == WatchtowerConfig().to_file_dict()

    def test_user_then_project_then_env(self, tmp_path, monkeypatch):
        write_json(get_user_config_path(), {"gitPollInterval": 8000, "soundEnabled": False})
        write_json(tmp_path / ".watchtowerrc.json", {"gitPollInterval": 9000, "server": {"port": 4000}})
        monkeypatch.setenv("WATCHTOWER_REMOTE", "upstream")

        config = load_config(tmp_path, use_cache=False)
        assert config.git_poll_interval == 9000
        assert config.sound_enabled is False
        assert config.server.port == 4000
        assert config.server.mode == "none"
        assert config.remote_name == "upstream"

    def test_legacy_project_file(self, tmp_path):
        write_json(tmp_path / ".watchtowerrc.json", {"port": 5173, "noServer": True})
        config = load_config(tmp_path, use_cache=False)
        assert config.server.port == 5173
        assert config.server.mode == "none"

    def test_invalid_file_raises(self, tmp_path):
        write_json(tmp_path / ".watchtowerrc.json", {"gitPollInterval": 10})
        with pytest.raises(ConfigError):
            load_config(tmp_path, use_cache=False)

    def test_cache(self, tmp_path):
        first = load_config(tmp_path)
        write_json(tmp_path / ".watchtowerrc.json", {"gitPollInterval": 9000})
        assert load_config(tmp_path) is first
        clear_cache()
        assert load_config(tmp_path).git_poll_interval == 9000


class TestSaveAndDelete:
    """Test project config persistence."""

    def test_save_round_trip(self, tmp_path):
        config = WatchtowerConfig(server=ServerConfig(mode="command", command="npm run dev"))
        path = save_config(config, tmp_path)
        assert json.loads(path.read_text())["server"]["command"] == "npm run dev"
        assert config_exists(tmp_path)
        assert load_config(tmp_path, use_cache=False) == config

    def test_delete(self, tmp_path):
        assert not delete_config(tmp_path)
        save_config(WatchtowerConfig(), tmp_path)
        assert delete_config(tmp_path)
        assert not config_exists(tmp_path)
