"""
Session registry for codesession.

PURPOSE: Own the live tracking resources of every session this process is
observing, keyed by session id.
AI CONTEXT: Each session id maps to its own RegistryEntry: watch handle,
commit-poll task, polling guard, debounce keys with their timers, last seen
commit hash and in-flight write tasks. Nothing is shared between entries,
so ending one session can never disturb another one's observers.

CONTRACT:
- register(id, ...) is idempotent: a second call returns the live entry
- unregister(id) is safe for unknown ids and for repeated calls
- unregister releases everything: watch handle, poll task, every pending
  debounce timer and every in-flight observer task
- an entry whose session was ended elsewhere (another process, `cs end`)
  releases itself once an observer sees the session is no longer active

USAGE (inside a running event loop):
    registry = SessionRegistry(store, git=GitCapability(), watcher=WatchdogWatcher())
    registry.register(session.id, session.working_directory)
    ...
    registry.unregister(session.id)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import Config
from .git import GitCapability
from .observers import CommitListener, CommitObserver, FileChangeListener, FileChangeObserver

if TYPE_CHECKING:
    from .storage import AccountingStore
    from .watcher import WatchCapability, WatchHandle

__all__ = ["RegistryEntry", "SessionRegistry"]

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    """
    Live tracking state for one session. In-memory only.

    Attributes:
        session_id: Session this entry belongs to.
        directory: Watched working directory.
        repo_path: Directory git is queried in (repo root or directory).
        watch_handle: Filesystem watch, if file tracking is on.
        poll_task: Commit-poll task, if commit tracking is on.
        polling: True while a commit poll is in flight.
        recent_keys: Debounce keys (path, kind) and their expiry timers.
        last_commit_hash: Last commit seen for this session's repository.
        pending: Observer tasks (store writes, poll ticks) still running.
        released: Set once unregister() tore the entry down.
    """

    session_id: int
    directory: str
    repo_path: str
    watch_handle: WatchHandle | None = None
    poll_task: asyncio.Task[Any] | None = None
    polling: bool = False
    recent_keys: dict[tuple[str, str], asyncio.TimerHandle] = field(default_factory=dict)
    last_commit_hash: str | None = None
    pending: set[asyncio.Task[Any]] = field(default_factory=set)
    released: bool = False

    def release(self) -> None:
        """Close and cancel every resource held by this entry."""
        self.released = True
        handle, self.watch_handle = self.watch_handle, None
        if handle is not None:
            try:
                handle.close()
            except Exception as e:
                logger.warning(f"Session {self.session_id}: error closing watch: {e}")

        task, self.poll_task = self.poll_task, None
        if task is not None and not task.done():
            task.cancel()

        for timer in self.recent_keys.values():
            timer.cancel()
        self.recent_keys.clear()

        for pending in list(self.pending):
            if not pending.done():
                pending.cancel()
        self.pending.clear()
        self.polling = False


class SessionRegistry:
    """
    Map of session id to independent tracking resources.

    Args:
        store: Store the observers write to.
        git: Git capability for commit polling.
        watcher: Filesystem-watch capability. None disables file watching.
        debounce_seconds: Debounce window for file events.
        poll_interval: Seconds between commit polls.
    """

    def __init__(
        self,
        store: AccountingStore,
        git: GitCapability | None = None,
        watcher: WatchCapability | None = None,
        debounce_seconds: float = Config.DEBOUNCE_SECONDS,
        poll_interval: float = Config.COMMIT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.git = git or GitCapability()
        self.watcher = watcher
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self._entries: dict[int, RegistryEntry] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, session_id: int) -> RegistryEntry | None:
        return self._entries.get(session_id)

    def session_ids(self) -> list[int]:
        return list(self._entries)

    def register(
        self,
        session_id: int,
        directory: str,
        repo_path: str | None = None,
        start_head: str | None = None,
        watch_files: bool = True,
        poll_commits: bool = True,
        poll_interval: float | None = None,
        on_file_change: FileChangeListener | None = None,
        on_commit: CommitListener | None = None,
    ) -> RegistryEntry:
        """
        Start tracking a session. Must be called inside a running loop.

        Idempotent: if the session is already registered the existing entry
        is returned and no second watcher or poll task is created.

        Args:
            session_id: Session to track.
            directory: Directory to watch.
            repo_path: Directory to query git in. Default: directory.
            start_head: HEAD at session start; commits up to it are ignored.
            watch_files: Start a filesystem watch.
            poll_commits: Start commit polling.
            poll_interval: Override for this session's poll interval.
            on_file_change: Listener called after each recorded file change.
            on_commit: Listener called after each recorded commit.

        Returns:
            The session's RegistryEntry.
        """
        existing = self._entries.get(session_id)
        if existing is not None:
            logger.debug(f"Session {session_id} already registered")
            return existing

        entry = RegistryEntry(
            session_id=session_id,
            directory=directory,
            repo_path=repo_path or directory,
            last_commit_hash=start_head,
        )
        self._entries[session_id] = entry

        if watch_files and self.watcher is not None:
            file_observer = FileChangeObserver(
                entry,
                self.store,
                self.debounce_seconds,
                on_change=on_file_change,
                on_closed=lambda: self._release_closed(entry),
            )
            try:
                entry.watch_handle = self.watcher.watch(directory, file_observer.handle_event)
            except Exception as e:
                logger.warning(f"Session {session_id}: file watching unavailable: {e}")

        if poll_commits:
            commit_observer = CommitObserver(
                entry,
                self.store,
                self.git,
                interval=poll_interval or self.poll_interval,
                on_commit=on_commit,
                on_closed=lambda: self._release_closed(entry),
            )
            entry.poll_task = asyncio.get_running_loop().create_task(commit_observer.run())

        logger.info(f"Tracking session {session_id} in {directory}")
        return entry

    def unregister(self, session_id: int) -> bool:
        """
        Stop tracking a session and release all of its resources.

        Returns:
            True if an entry was released, False if none was registered.
        """
        entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        entry.release()
        logger.info(f"Stopped tracking session {session_id}")
        return True

    def _release_closed(self, entry: RegistryEntry) -> None:
        """Unregister an entry whose session was ended outside this registry."""
        if self._entries.get(entry.session_id) is entry:
            self.unregister(entry.session_id)

    def unregister_all(self) -> int:
        """Release every entry. Returns how many were released."""
        ids = list(self._entries)
        for session_id in ids:
            self.unregister(session_id)
        return len(ids)
