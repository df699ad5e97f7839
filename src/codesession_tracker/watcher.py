"""
Filesystem-watch capability for codesession.

PURPOSE: Deliver {relative path, change kind} events for a directory tree,
skipping dotfiles and well-known dependency/build/VCS directories.
AI CONTEXT: Built on watchdog. watchdog delivers events on its own observer
thread; WatchdogWatcher hands each accepted event to the asyncio loop with
call_soon_threadsafe, so FileChangeObserver only ever runs on the loop.

EVENT MAPPING:
- created  -> "created"
- modified -> "modified"
- deleted  -> "deleted"
- moved    -> "deleted" for the source, "created" for the destination
Directory events are dropped; only files are tracked.

ERROR HANDLING:
Failure to start a watch (permissions, inotify watch limit) is logged and
yields an inert handle. The session keeps running without file events.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import Config

__all__ = [
    "ChangeCallback",
    "WatchHandle",
    "WatchCapability",
    "WatchdogWatcher",
    "is_ignored",
]

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, str], None]


def is_ignored(relative_path: str) -> bool:
    """
    Check whether a path relative to the watch root should be skipped.

    A path is ignored if any component is a dotfile/dot-directory or one of
    Config.IGNORED_DIRECTORIES.

    Example:
        >>> is_ignored("node_modules/pkg/index.js")
        True
        >>> is_ignored("src/app.py")
        False
    """
    parts = [p for p in relative_path.replace("\\", "/").split("/") if p and p != "."]
    for part in parts:
        if part.startswith(".") or part in Config.IGNORED_DIRECTORIES:
            return True
    return False


class WatchHandle(Protocol):
    """Handle returned by a watch capability."""

    def close(self) -> None:
        """Stop delivering events. Safe to call more than once."""
        ...


class WatchCapability(Protocol):
    """Anything that can watch a directory and report file changes."""

    def watch(self, path: str, on_change: ChangeCallback) -> WatchHandle:
        """Start watching path recursively, calling on_change(rel_path, kind)."""
        ...


class _ChangeHandler(FileSystemEventHandler):
    """Translate watchdog events into (relative path, kind) callbacks."""

    def __init__(self, root: str, emit: ChangeCallback) -> None:
        super().__init__()
        self._root = root
        self._emit = emit

    def _report(self, src: str | bytes, kind: str) -> None:
        path = os.fsdecode(src)
        relative = os.path.relpath(path, self._root)
        if relative.startswith("..") or is_ignored(relative):
            return
        self._emit(relative, kind)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, "modified")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._report(event.src_path, "deleted")

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._report(event.src_path, "deleted")
        self._report(event.dest_path, "created")


class _ObserverHandle:
    """Owns one running watchdog Observer."""

    def __init__(self, observer: Observer | None, path: str) -> None:
        self._observer = observer
        self.path = path

    @property
    def active(self) -> bool:
        return self._observer is not None

    def close(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=1.0)
        logger.debug(f"Stopped watch on {self.path}")


class WatchdogWatcher:
    """
    Watch capability backed by a watchdog Observer per watched directory.

    Must be used from inside a running asyncio loop (or be given one), since
    events are handed to the loop thread.

    Example:
        >>> watcher = WatchdogWatcher()
        >>> handle = watcher.watch("/repo", lambda path, kind: print(path, kind))
        >>> handle.close()
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def watch(self, path: str, on_change: ChangeCallback) -> _ObserverHandle:
        loop = self._loop or asyncio.get_running_loop()
        root = os.path.abspath(path)

        def emit(relative: str, kind: str) -> None:
            try:
                loop.call_soon_threadsafe(on_change, relative, kind)
            except RuntimeError:
                # loop already closed during shutdown
                logger.debug(f"Dropped {kind} event for {relative}: event loop closed")

        observer = Observer()
        try:
            observer.schedule(_ChangeHandler(root, emit), root, recursive=True)
            observer.start()
        except OSError as e:
            logger.warning(f"Could not watch {root}: {e}")
            return _ObserverHandle(None, root)
        logger.debug(f"Watching {root}")
        return _ObserverHandle(observer, root)
