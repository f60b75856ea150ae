"""
Unit tests for configuration loader.

Tests multi-layer config merging, environment variable overrides,
caching, and .env loading.
"""

import json
import os
from pathlib import Path

import pytest

from tasksync.core.config import (
    ConfigError,
    SyncConfig,
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    load_config,
)
from tasksync.core.config.env import load_layered_env
from tasksync.core.config.loader import (
    apply_env_overrides,
    deep_merge,
    get_default_config,
    get_xdg_config_home,
    load_json_file,
)


def write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


# ==============================================================================
# Helper Functions Tests
# ==============================================================================


class TestDeepMerge:
    """Test the deep_merge helper function."""

    def test_nested_merge(self):
        """Test merging nested dicts."""
        base = {"a": 1, "b": {"x": 10, "y": 20}}
        override = {"b": {"y": 30, "z": 40}, "c": 3}
        assert deep_merge(base, override) == {"a": 1, "b": {"x": 10, "y": 30, "z": 40}, "c": 3}

    def test_override_replaces_non_dict(self):
        """Test that non-dict values are replaced, not merged."""
        assert deep_merge({"a": [1, 2, 3]}, {"a": [4, 5]}) == {"a": [4, 5]}

    def test_base_is_not_mutated(self):
        base = {"retry": {"max_retries": 3}}
        deep_merge(base, {"retry": {"max_retries": 5}})
        assert base == {"retry": {"max_retries": 3}}


class TestLoadJsonFile:
    """Test loading JSON config files."""

    def test_missing_file(self, tmp_path):
        assert load_json_file(tmp_path / "nope.json") is None

    def test_invalid_json(self, tmp_path):
        """Test a broken file is skipped rather than fatal."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        assert load_json_file(path) is None

    def test_non_object(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        assert load_json_file(path) is None


class TestPaths:
    def test_xdg_config_home(self, tmp_path):
        assert get_xdg_config_home() == tmp_path / "xdg"
        assert get_user_config_path() == tmp_path / "xdg" / "tasksync" / "config.json"

    def test_project_config_path(self, tmp_path):
        assert get_project_config_path(tmp_path) == tmp_path / ".tasksync.json"


# ==============================================================================
# Env Overrides Tests
# ==============================================================================


class TestApplyEnvOverrides:
    """Test environment variable overrides."""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("TASKSYNC_API_URL", "https://tasks.example.com")
        monkeypatch.setenv("TASKSYNC_USER_ID", "user-7")
        monkeypatch.setenv("TASKSYNC_MAX_RETRIES", "5")
        monkeypatch.setenv("TASKSYNC_RESYNC_QUIET_PERIOD", "0.5")

        result = apply_env_overrides({"remote": {"timeout": 10}})

        assert result["remote"] == {
            "timeout": 10,
            "api_url": "https://tasks.example.com",
            "user_id": "user-7",
        }
        assert result["retry"] == {"max_retries": 5}
        assert result["events"] == {"resync_quiet_period": 0.5}

    @pytest.mark.parametrize("value", ["many", "-1"])
    def test_invalid_retries_ignored(self, monkeypatch, value):
        monkeypatch.setenv("TASKSYNC_MAX_RETRIES", value)
        assert "retry" not in apply_env_overrides({})

    def test_invalid_quiet_period_ignored(self, monkeypatch):
        monkeypatch.setenv("TASKSYNC_RESYNC_QUIET_PERIOD", "soon")
        assert apply_env_overrides({}) == {}


# ==============================================================================
# Full Loading Tests
# ==============================================================================


class TestLoadConfig:
    """Test the layered load_config."""

    def test_defaults(self, tmp_path):
        config = load_config(project_dir=tmp_path, use_cache=False, load_env_files=False)
        assert config.retry.max_retries == 3
        assert config.events.resync_quiet_period == 2.0
        assert config.ordering.my_tasks_scope == "my-tasks"
        assert get_default_config()["retry"]["max_delay"] == 30.0

    def test_precedence(self, tmp_path, monkeypatch):
        """Test project config beats user config and env beats both."""
        write_json(
            get_user_config_path(),
            {"retry": {"max_retries": 1, "base_delay": 0.5}, "remote": {"user_id": "from-user"}},
        )
        write_json(tmp_path / ".tasksync.json", {"retry": {"max_retries": 2}})
        monkeypatch.setenv("TASKSYNC_USER_ID", "from-env")

        config = load_config(project_dir=tmp_path, use_cache=False, load_env_files=False)

        assert config.retry.max_retries == 2
        assert config.retry.base_delay == 0.5
        assert config.remote.user_id == "from-env"

    def test_invalid_config_raises(self, tmp_path):
        write_json(tmp_path / ".tasksync.json", {"retry": {"max_retries": -3}})
        with pytest.raises(ConfigError):
            load_config(project_dir=tmp_path, use_cache=False, load_env_files=False)

    def test_unknown_keys_are_kept(self, tmp_path):
        write_json(tmp_path / ".tasksync.json", {"experimental": {"flag": True}})
        config = load_config(project_dir=tmp_path, use_cache=False, load_env_files=False)
        assert config.model_extra == {"experimental": {"flag": True}}

    def test_cache(self, tmp_path):
        first = load_config(project_dir=tmp_path, load_env_files=False)
        write_json(tmp_path / ".tasksync.json", {"retry": {"max_retries": 9}})
        assert load_config(project_dir=tmp_path, load_env_files=False) is first

        clear_cache()
        assert load_config(project_dir=tmp_path, load_env_files=False).retry.max_retries == 9

    def test_model_defaults(self):
        assert SyncConfig().store.id_mapping_ttl_days == 7


class TestLoadLayeredEnv:
    """Test .env loading."""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        # Register the keys so monkeypatch removes whatever the loader sets
        for name in ("TASKSYNC_TEST_A", "TASKSYNC_TEST_B", "TASKSYNC_TEST_C"):
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)

    def test_project_overrides_user(self, tmp_path):
        user_env = tmp_path / "user.env"
        user_env.write_text("TASKSYNC_TEST_A=user\nTASKSYNC_TEST_B=user\n")
        project_env = tmp_path / "project.env"
        project_env.write_text("TASKSYNC_TEST_B=project\n")

        loaded = load_layered_env(user_env_paths=[user_env], project_env_paths=[project_env])

        assert loaded == {"TASKSYNC_TEST_A", "TASKSYNC_TEST_B"}
        assert os.environ["TASKSYNC_TEST_A"] == "user"
        assert os.environ["TASKSYNC_TEST_B"] == "project"

    def test_os_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASKSYNC_TEST_C", "shell")
        project_env = tmp_path / ".env"
        project_env.write_text("TASKSYNC_TEST_C=file\n")

        loaded = load_layered_env(project_dir=tmp_path, user_env_paths=[])

        assert loaded == set()
        assert os.environ["TASKSYNC_TEST_C"] == "shell"

    def test_env_file_feeds_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASKSYNC_USER_ID", "")
        monkeypatch.delenv("TASKSYNC_USER_ID")
        (tmp_path / ".env").write_text("TASKSYNC_USER_ID=dotenv-user\n")

        config = load_config(project_dir=tmp_path, use_cache=False)

        assert config.remote.user_id == "dotenv-user"
