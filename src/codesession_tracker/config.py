"""
Configuration for codesession.

PURPOSE: Centralized configuration constants and runtime settings.
AI CONTEXT: All configurable values live here - modify this file to change behavior.

CONFIGURATION CATEGORIES:
- Storage: Data directory, store and pricing file names, legacy location
- Store concurrency: busy timeout for concurrent writers
- Observers: debounce window, commit poll intervals, git timeout, ignore set
- Accounting: cost rounding scale, pricing scale, duration ceiling
- Dashboard / MCP: host, port, bearer token, server identity

ENVIRONMENT VARIABLES:
- CODESESSION_HOME: Data directory (default: ~/.codesession)
- CODESESSION_TOKEN: Optional bearer token required by the dashboard API

USAGE:
    from codesession_tracker.config import Config
    db_path = Config.db_path()
    window = Config.DEBOUNCE_SECONDS
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration container for codesession.

    DESIGN: Frozen dataclass ensures configuration immutability at runtime.
    All values are class-level constants - no instance creation needed.
    Environment-dependent values are resolved by classmethods so tests
    can override them with set_test_overrides().

    STORAGE STRUCTURE:
        ~/.codesession/
        ├── sessions.db            # SQLite store (WAL mode)
        ├── pricing.json           # User pricing overrides {model: {input, output}}
        └── dashboard-<port>.pid   # PID of a running dashboard
    """

    # =========================================================================
    # STORAGE CONFIGURATION
    # =========================================================================
    DATA_DIR_NAME: ClassVar[str] = ".codesession"
    LEGACY_DATA_DIR_NAME: ClassVar[str] = ".devsession"
    DB_FILE: ClassVar[str] = "sessions.db"
    PRICING_FILE: ClassVar[str] = "pricing.json"
    PID_FILE_TEMPLATE: ClassVar[str] = "dashboard-{port}.pid"

    BUSY_TIMEOUT_MS: ClassVar[int] = 5000
    """How long a writer waits on a locked store before giving up."""

    # =========================================================================
    # OBSERVER CONFIGURATION
    # =========================================================================
    DEBOUNCE_SECONDS: ClassVar[float] = 1.0
    """Window during which a repeated (path, change kind) event is dropped."""

    COMMIT_POLL_INTERVAL_SECONDS: ClassVar[float] = 10.0
    AGENT_COMMIT_POLL_INTERVAL_SECONDS: ClassVar[float] = 5.0
    GIT_TIMEOUT_SECONDS: ClassVar[float] = 30.0

    IGNORED_DIRECTORIES: ClassVar[frozenset[str]] = frozenset(
        {
            ".git",
            "node_modules",
            "dist",
            "build",
            "__pycache__",
            ".venv",
            "venv",
        }
    )
    """Path components never reported by the file watcher (dotfiles are also skipped)."""

    # =========================================================================
    # ACCOUNTING CONFIGURATION
    # =========================================================================
    COST_DECIMALS: ClassVar[int] = 10
    PRICING_SCALE: ClassVar[int] = 1_000_000
    """Pricing table rates are expressed per 1M tokens."""

    PROMPT_SHARE_ESTIMATE: ClassVar[float] = 0.7
    """Prompt share assumed when only a total token count is known."""

    MAX_DURATION_SECONDS: ClassVar[int] = 365 * 24 * 3600
    DEFAULT_STALE_HOURS: ClassVar[float] = 24.0

    SESSION_STATUSES: ClassVar[frozenset[str]] = frozenset({"active", "completed"})
    CHANGE_KINDS: ClassVar[frozenset[str]] = frozenset({"created", "modified", "deleted"})

    # =========================================================================
    # DASHBOARD / MCP CONFIGURATION
    # =========================================================================
    DEFAULT_HOST: ClassVar[str] = "127.0.0.1"
    DEFAULT_PORT: ClassVar[int] = 3737
    MCP_VERSION: ClassVar[str] = "2024-11-05"
    SERVER_NAME: ClassVar[str] = "codesession"
    DEFAULT_AGENT_NAME: ClassVar[str] = "Claude Code"

    # =========================================================================
    # ENVIRONMENT-BASED SETTINGS (runtime configurable)
    # =========================================================================
    _data_dir_override: ClassVar[str | None] = None
    _token_override: ClassVar[str | None] = None

    @classmethod
    def data_dir(cls) -> str:
        """
        Resolve the directory holding the store and pricing overrides.

        Priority: test override, then CODESESSION_HOME, then
        ~/.codesession.

        Returns:
            Absolute path of the data directory (not created here).

        Example:
            >>> Config.data_dir()
            '/home/user/.codesession'
        """
        if cls._data_dir_override is not None:
            return cls._data_dir_override
        env_dir = os.environ.get("CODESESSION_HOME")
        if env_dir:
            return os.path.expanduser(env_dir)
        return os.path.join(os.path.expanduser("~"), cls.DATA_DIR_NAME)

    @classmethod
    def legacy_data_dir(cls) -> str:
        """Return the pre-rename data directory (~/.devsession)."""
        return os.path.join(os.path.expanduser("~"), cls.LEGACY_DATA_DIR_NAME)

    @classmethod
    def db_path(cls) -> str:
        """Return the absolute path of the SQLite store file."""
        return os.path.join(cls.data_dir(), cls.DB_FILE)

    @classmethod
    def pricing_path(cls) -> str:
        """Return the absolute path of the pricing overrides file."""
        return os.path.join(cls.data_dir(), cls.PRICING_FILE)

    @classmethod
    def pid_file_path(cls, port: int) -> str:
        """Return the PID file path for a dashboard bound to ``port``."""
        return os.path.join(cls.data_dir(), cls.PID_FILE_TEMPLATE.format(port=port))

    @classmethod
    def api_token(cls) -> str | None:
        """
        Get the optional bearer token protecting the dashboard API.

        Returns:
            Token string, or None when the API is open (the default for a
            dashboard bound to localhost).
        """
        if cls._token_override is not None:
            return cls._token_override or None
        return os.environ.get("CODESESSION_TOKEN") or None

    @classmethod
    def set_test_overrides(
        cls,
        data_dir: str | None = None,
        token: str | None = None,
    ) -> None:
        """
        Set test overrides for environment-based settings.

        Must call reset_test_overrides() in test teardown to avoid
        affecting other tests.

        Args:
            data_dir: Override for the data directory. None to clear.
            token: Override for the API bearer token. "" forces no token.
        """
        cls._data_dir_override = data_dir
        cls._token_override = token

    @classmethod
    def reset_test_overrides(cls) -> None:
        """Reset all test overrides to use environment variables."""
        cls._data_dir_override = None
        cls._token_override = None
