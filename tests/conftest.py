"""
Pytest configuration and shared fixtures for codesession tests.

This module contains:
- MockFileSystem: In-memory filesystem for the small side files
  (pricing overrides, PID files)
- FakeGit: Scriptable stand-in for GitCapability (no child processes)
- FakeWatcher: Watch capability whose events are emitted by the test
- Fixtures for a temporary store, pricing table, registry and service
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest

from codesession_tracker.config import Config
from codesession_tracker.git import CommitInfo
from codesession_tracker.pricing import PricingTable
from codesession_tracker.registry import SessionRegistry
from codesession_tracker.session_service import SessionService
from codesession_tracker.storage import AccountingStore


class MockFileSystem:
    """
    In-memory file system for testing.

    Simulates a file system using dictionaries:
    - _files: dict mapping path -> content (str)
    - _dirs: set of directory paths

    Business context: pricing overrides and dashboard PID files go through
    the FileSystem protocol, so these tests never touch the user's home.
    """

    def __init__(self) -> None:
        self._files: dict[str, str] = {}
        self._dirs: set[str] = set()
        self._read_only: set[str] = set()

    def exists(self, path: str) -> bool:
        return path in self._files or path in self._dirs

    def is_file(self, path: str) -> bool:
        return path in self._files

    def makedirs(self, path: str, exist_ok: bool = False) -> None:
        """
        Create mock directory and parent directories.

        Raises:
            OSError: If directory exists and exist_ok is False,
                or if path is an existing file.
        """
        if path in self._dirs:
            if not exist_ok:
                raise OSError(f"Directory exists: {path}")
            return
        if path in self._files:
            raise OSError(f"Path is a file, not directory: {path}")
        parts = path.rstrip("/").split("/")
        for i in range(1, len(parts) + 1):
            parent = "/".join(parts[:i])
            if parent:
                self._dirs.add(parent)

    def read_text(self, path: str, _encoding: str = "utf-8") -> str:
        if path not in self._files:
            raise FileNotFoundError(f"No such file: {path}")
        return self._files[path]

    def write_text(self, path: str, content: str, _encoding: str = "utf-8") -> None:
        """
        Write content to a mock file, creating parent directories.

        Raises:
            PermissionError: If path was marked read-only with set_read_only().
        """
        if path in self._read_only:
            raise PermissionError(f"Read-only file: {path}")
        parent = path.rsplit("/", 1)[0]
        if parent:
            self.makedirs(parent, exist_ok=True)
        self._files[path] = content

    def remove(self, path: str) -> None:
        if path not in self._files:
            raise FileNotFoundError(f"No such file: {path}")
        del self._files[path]

    def copy_file(self, src: str, dst: str) -> None:
        if src not in self._files:
            raise FileNotFoundError(f"No such file: {src}")
        self.write_text(dst, self._files[src])

    # =========================================================================
    # TEST HELPERS
    # =========================================================================

    def get_file(self, path: str) -> str | None:
        """File content, or None if the file does not exist."""
        return self._files.get(path)

    def set_file(self, path: str, content: str) -> None:
        self.write_text(path, content)

    def set_read_only(self, path: str) -> None:
        self._read_only.add(path)

    def list_files(self) -> list[str]:
        return sorted(self._files)


class FakeGit:
    """
    Scriptable git capability.

    Tests set attributes to describe the repository; every method answers
    from them without running git. ``calls`` records (method, cwd) pairs.

    Example:
        >>> git = FakeGit(root="/repo", head="a" * 40)
        >>> git.add_commit("b" * 40, "Fix login")
    """

    def __init__(
        self,
        root: str | None = None,
        head: str | None = None,
        branch: str | None = "main",
        dirty: bool | None = False,
    ) -> None:
        self.root = root
        self.head_hash = head
        self.branch = branch
        self.dirty = dirty
        self.commits: list[CommitInfo] = []
        self.changed_files: list[tuple[str, str]] = []
        self.diff_text = ""
        self.fail_latest = False
        self.calls: list[tuple[str, str]] = []

    def add_commit(self, full_hash: str, message: str, timestamp: str = "2026-01-05T10:00:00+00:00") -> CommitInfo:
        commit = CommitInfo(hash=full_hash, message=message, timestamp=timestamp)
        self.commits.append(commit)
        self.head_hash = full_hash
        return commit

    async def repo_root(self, cwd: str) -> str | None:
        self.calls.append(("repo_root", cwd))
        return self.root

    async def head(self, cwd: str) -> str | None:
        self.calls.append(("head", cwd))
        return self.head_hash

    async def current_branch(self, cwd: str) -> str | None:
        return self.branch

    async def has_changes(self, cwd: str) -> bool | None:
        return self.dirty

    async def latest_commit(self, cwd: str) -> CommitInfo | None:
        self.calls.append(("latest_commit", cwd))
        if self.fail_latest:
            raise RuntimeError("git exploded")
        return self.commits[-1] if self.commits else None

    async def log_commits(self, cwd: str, from_ref: str) -> list[CommitInfo]:
        hashes = [c.hash for c in self.commits]
        start = hashes.index(from_ref) + 1 if from_ref in hashes else 0
        return self.commits[start:]

    async def diff_files(self, cwd: str, from_ref: str) -> list[tuple[str, str]]:
        return list(self.changed_files)

    async def diff(
        self, cwd: str, from_ref: str, to_ref: str | None = None, path: str | None = None
    ) -> str:
        self.calls.append(("diff", cwd))
        return self.diff_text

    async def commit_diff(self, cwd: str, commit_hash: str, path: str | None = None) -> str:
        self.calls.append(("commit_diff", cwd))
        return self.diff_text


class FakeHandle:
    """Watch handle that records whether it was closed."""

    def __init__(self, path: str, on_change: Any) -> None:
        self.path = path
        self.on_change = on_change
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeWatcher:
    """Watch capability whose events are emitted by the test itself."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    def watch(self, path: str, on_change: Any) -> FakeHandle:
        handle = FakeHandle(path, on_change)
        self.handles.append(handle)
        return handle

    def emit(self, relative_path: str, kind: str) -> None:
        """Deliver an event to every open watch (call on the loop thread)."""
        for handle in self.handles:
            if not handle.closed:
                handle.on_change(relative_path, kind)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Any) -> Iterator[str]:
    """
    Point the data directory at a temporary path and clear the API token.

    Autouse so no test can read or write ~/.codesession by accident.
    """
    data_dir = str(tmp_path / "home")
    Config.set_test_overrides(data_dir=data_dir, token="")
    yield data_dir
    Config.reset_test_overrides()


@pytest.fixture
def mock_fs() -> MockFileSystem:
    """Fresh in-memory filesystem for each test."""
    return MockFileSystem()


@pytest.fixture
def store(tmp_path: Any) -> AccountingStore:
    """Store backed by a temporary SQLite file."""
    return AccountingStore(db_path=str(tmp_path / "sessions.db"))


@pytest.fixture
def pricing(tmp_path: Any) -> PricingTable:
    """Pricing table with no overrides, stored under a temporary directory."""
    return PricingTable(config_dir=str(tmp_path / "cfg"))


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_watcher() -> FakeWatcher:
    return FakeWatcher()


@pytest.fixture
def registry(store: AccountingStore, fake_git: FakeGit, fake_watcher: FakeWatcher) -> SessionRegistry:
    """Registry with a short debounce window and fast commit polling."""
    return SessionRegistry(
        store,
        git=fake_git,  # type: ignore[arg-type]
        watcher=fake_watcher,
        debounce_seconds=0.05,
        poll_interval=0.01,
    )


@pytest.fixture
def service(
    store: AccountingStore,
    pricing: PricingTable,
    fake_git: FakeGit,
    registry: SessionRegistry,
) -> SessionService:
    """
    SessionService wired to the temporary store and fake capabilities.

    Example:
        >>> result = asyncio.run(service.start_session("Fix bug", "/repo"))
        >>> result.success
        True
    """
    return SessionService(
        store=store,
        pricing=pricing,
        git=fake_git,  # type: ignore[arg-type]
        registry=registry,
    )
