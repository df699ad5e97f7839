"""
Per-session observers for codesession.

PURPOSE: Turn raw filesystem events and git state into store events for
exactly one session.
AI CONTEXT: Both observers operate on a RegistryEntry (owned by
SessionRegistry) and run on the asyncio loop. Store writes are pushed to a
worker thread with asyncio.to_thread so a busy store never blocks the loop.

FILE-CHANGE OBSERVER:
    raw event (path, kind)
      └─► key (path, kind) seen within the debounce window? ─► drop
      └─► remember key, schedule its expiry (loop.call_later)
      └─► record_file_change in a worker thread

COMMIT OBSERVER:
    tick every interval (fire-and-forget, like a timer)
      └─► poll already in flight for this session? ─► drop tick
      └─► session no longer active in the store? ─► hand back for release
      └─► latest_commit(repo) differs from last seen? ─► record_commit
      └─► last seen moves only after the write succeeds

Failures (store write errors, git errors) are logged and absorbed. Neither
observer ever raises into the loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any

from .config import Config
from .errors import SessionNotFoundError

if TYPE_CHECKING:
    from .git import CommitInfo, GitCapability
    from .registry import RegistryEntry
    from .storage import AccountingStore

__all__ = [
    "FileChangeObserver",
    "CommitObserver",
    "FileChangeListener",
    "CommitListener",
    "ClosedListener",
]

logger = logging.getLogger(__name__)

FileChangeListener = Callable[[str, str], Any]
CommitListener = Callable[["CommitInfo"], Any]
ClosedListener = Callable[[], Any]


def _track(entry: RegistryEntry, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
    """Start a task owned by the entry so teardown can cancel it."""
    task = asyncio.get_running_loop().create_task(coro)
    entry.pending.add(task)
    task.add_done_callback(entry.pending.discard)
    return task


def _session_closed(entry: RegistryEntry, on_closed: ClosedListener | None) -> None:
    """Hand a session that is no longer active back to its owner for release."""
    if entry.released:
        return
    logger.info(f"Session {entry.session_id} is no longer active, stopping its observers")
    if on_closed is not None:
        # run outside the observer's own task, which release() cancels
        asyncio.get_running_loop().call_soon(on_closed)


class FileChangeObserver:
    """
    Debounced file-change recording for one session.

    Attributes:
        entry: Registry state shared with the session's other resources.
        debounce_seconds: Window in which a repeated (path, kind) is dropped.
        on_closed: Called once the store refuses a write because the session
            was ended (possibly by another process).
    """

    def __init__(
        self,
        entry: RegistryEntry,
        store: AccountingStore,
        debounce_seconds: float = Config.DEBOUNCE_SECONDS,
        on_change: FileChangeListener | None = None,
        on_closed: ClosedListener | None = None,
    ) -> None:
        self.entry = entry
        self.store = store
        self.debounce_seconds = debounce_seconds
        self.on_change = on_change
        self.on_closed = on_closed

    def handle_event(self, path: str, kind: str) -> bool:
        """
        Accept one raw event. Must be called on the loop thread.

        Returns:
            True if the event was accepted, False if debounced or the
            entry has already been released.
        """
        if self.entry.released:
            return False
        key = (path, kind)
        if key in self.entry.recent_keys:
            return False

        loop = asyncio.get_running_loop()
        self.entry.recent_keys[key] = loop.call_later(self.debounce_seconds, self._expire, key)
        _track(self.entry, self._record(path, kind))
        return True

    def _expire(self, key: tuple[str, str]) -> None:
        self.entry.recent_keys.pop(key, None)

    async def _record(self, path: str, kind: str) -> None:
        session_id = self.entry.session_id
        try:
            await asyncio.to_thread(self.store.record_file_change, session_id, path, kind)
        except SessionNotFoundError:
            _session_closed(self.entry, self.on_closed)
            return
        except Exception as e:
            logger.warning(f"Session {session_id}: could not record {kind} {path}: {e}")
            return
        if self.on_change is not None:
            await _notify(self.on_change, path, kind)


class CommitObserver:
    """
    Polling commit detection for one session with a re-entrancy guard.

    Each poll also confirms the session is still active in the store, so a
    session ended by another process stops being polled on the next tick.

    Attributes:
        entry: Registry state (holds the polling flag and last seen hash).
        interval: Seconds between ticks.
    """

    def __init__(
        self,
        entry: RegistryEntry,
        store: AccountingStore,
        git: GitCapability,
        interval: float = Config.COMMIT_POLL_INTERVAL_SECONDS,
        on_commit: CommitListener | None = None,
        on_closed: ClosedListener | None = None,
    ) -> None:
        self.entry = entry
        self.store = store
        self.git = git
        self.interval = interval
        self.on_commit = on_commit
        self.on_closed = on_closed

    async def prime(self) -> None:
        """Remember the current HEAD so commits older than the session are not recorded."""
        if self.entry.last_commit_hash is not None:
            return
        try:
            latest = await self.git.latest_commit(self.entry.repo_path)
        except Exception as e:
            logger.warning(f"Session {self.entry.session_id}: could not read HEAD: {e}")
            return
        if latest is not None:
            self.entry.last_commit_hash = latest.hash

    async def _still_active(self) -> bool:
        session = await asyncio.to_thread(self.store.get_session, self.entry.session_id)
        return session is not None and session.is_active

    async def poll_once(self) -> CommitInfo | None:
        """
        Run one poll unless another is already in flight.

        The last seen hash only moves after the commit is stored, so a
        failed write is retried on the next tick.

        Returns:
            The newly recorded commit, or None (no new commit, dropped
            tick, session no longer active, or a tolerated failure).
        """
        entry = self.entry
        if entry.polling or entry.released:
            return None
        entry.polling = True
        try:
            if not await self._still_active():
                _session_closed(entry, self.on_closed)
                return None
            latest = await self.git.latest_commit(entry.repo_path)
            if latest is None or latest.hash == entry.last_commit_hash:
                return None
            await asyncio.to_thread(
                self.store.record_commit, entry.session_id, latest.short_hash, latest.message
            )
            entry.last_commit_hash = latest.hash
        except SessionNotFoundError:
            _session_closed(entry, self.on_closed)
            return None
        except Exception as e:
            logger.warning(f"Session {entry.session_id}: commit poll failed: {e}")
            return None
        finally:
            entry.polling = False

        logger.debug(f"Session {entry.session_id}: recorded commit {latest.short_hash}")
        if self.on_commit is not None:
            await _notify(self.on_commit, latest)
        return latest

    async def run(self) -> None:
        """
        Tick forever until cancelled.

        Each tick is started as its own task and not awaited, so a slow git
        call overlaps the next tick and the guard in poll_once drops it.
        """
        await self.prime()
        while True:
            await asyncio.sleep(self.interval)
            _track(self.entry, self.poll_once())


async def _notify(listener: Callable[..., Any], *args: Any) -> None:
    try:
        result = listener(*args)
        if isinstance(result, Awaitable):
            await result
    except Exception as e:
        logger.warning(f"Observer listener failed: {e}")
