"""Tests for config module."""

from __future__ import annotations

import os
from unittest.mock import patch

from codesession_tracker.config import Config


class TestConfigConstants:
    """Tests for static configuration values."""

    def test_default_port(self) -> None:
        """Verifies the dashboard defaults to port 3737.

        Business context:
        Agents and docs point at http://localhost:3737. Changing the
        default silently would break existing bookmarks and MCP setups.

        Arrangement:
        None - tests static constant.

        Action:
        Access Config.DEFAULT_PORT.

        Assertion Strategy:
        Exact value match.
        """
        assert Config.DEFAULT_PORT == 3737

    def test_default_host_is_loopback(self) -> None:
        """Verifies the dashboard binds to localhost unless told otherwise."""
        assert Config.DEFAULT_HOST == "127.0.0.1"

    def test_mcp_identity(self) -> None:
        """Verifies the MCP protocol version and server name."""
        assert Config.MCP_VERSION == "2024-11-05"
        assert Config.SERVER_NAME == "codesession"

    def test_session_statuses(self) -> None:
        assert Config.SESSION_STATUSES == frozenset({"active", "completed"})

    def test_change_kinds(self) -> None:
        assert Config.CHANGE_KINDS == frozenset({"created", "modified", "deleted"})

    def test_ignored_directories_cover_vcs_and_dependencies(self) -> None:
        """Verifies the watcher ignore set includes the well-known noisy trees.

        Business context:
        Without these, a `npm install` during a session would report
        thousands of file changes.
        """
        for name in (".git", "node_modules", "dist", "build", "__pycache__"):
            assert name in Config.IGNORED_DIRECTORIES

    def test_duration_ceiling_is_one_year(self) -> None:
        assert Config.MAX_DURATION_SECONDS == 365 * 24 * 3600

    def test_pricing_scale_is_per_million(self) -> None:
        assert Config.PRICING_SCALE == 1_000_000

    def test_debounce_window_is_one_second(self) -> None:
        assert Config.DEBOUNCE_SECONDS == 1.0


class TestConfigPaths:
    """Tests for data directory resolution and derived file paths."""

    def test_data_dir_uses_test_override(self, isolated_config: str) -> None:
        """Verifies the autouse fixture's override wins over everything."""
        assert Config.data_dir() == isolated_config

    def test_data_dir_from_env_var(self) -> None:
        """Verifies CODESESSION_HOME is honored when no override is set.

        Arrangement:
        Clear the test override, patch the environment.

        Action:
        Resolve Config.data_dir().

        Assertion Strategy:
        Path equals the environment value (with ~ expanded).
        """
        Config.reset_test_overrides()
        with patch.dict(os.environ, {"CODESESSION_HOME": "/srv/cs"}):
            assert Config.data_dir() == "/srv/cs"

    def test_data_dir_defaults_to_home(self) -> None:
        Config.reset_test_overrides()
        env = {k: v for k, v in os.environ.items() if k != "CODESESSION_HOME"}
        with patch.dict(os.environ, env, clear=True):
            expected = os.path.join(os.path.expanduser("~"), ".codesession")
            assert Config.data_dir() == expected

    def test_legacy_data_dir(self) -> None:
        assert Config.legacy_data_dir().endswith(".devsession")

    def test_derived_paths_live_in_data_dir(self, isolated_config: str) -> None:
        assert Config.db_path() == os.path.join(isolated_config, "sessions.db")
        assert Config.pricing_path() == os.path.join(isolated_config, "pricing.json")
        assert Config.pid_file_path(4000) == os.path.join(isolated_config, "dashboard-4000.pid")


class TestConfigApiToken:
    """Tests for the optional dashboard bearer token."""

    def test_empty_override_means_no_token(self) -> None:
        """The autouse fixture forces an open API with token=""."""
        assert Config.api_token() is None

    def test_override_token(self) -> None:
        Config.set_test_overrides(token="s3cret")
        assert Config.api_token() == "s3cret"

    def test_token_from_env_var(self) -> None:
        Config.reset_test_overrides()
        with patch.dict(os.environ, {"CODESESSION_TOKEN": "from-env"}):
            assert Config.api_token() == "from-env"

    def test_blank_env_var_means_no_token(self) -> None:
        Config.reset_test_overrides()
        with patch.dict(os.environ, {"CODESESSION_TOKEN": ""}):
            assert Config.api_token() is None

    def test_reset_test_overrides_clears_all(self) -> None:
        """Verifies reset clears both the data dir and token overrides.

        Business context:
        Leaked overrides would make later tests read the wrong directory.
        """
        Config.set_test_overrides(data_dir="/tmp/x", token="t")
        Config.reset_test_overrides()
        assert Config._data_dir_override is None
        assert Config._token_override is None
