"""
FileSystem abstraction for codesession.

PURPOSE: Injectable file system interface for the small files that live
next to the SQLite store (pricing overrides, dashboard PID files, the legacy
data directory migration).
AI CONTEXT: The SQLite store itself opens its file directly; everything
else goes through this seam so tests can use an in-memory filesystem.

DESIGN:
- Protocol defines the interface
- RealFileSystem uses actual os/shutil operations
- MockFileSystem in tests/conftest.py stores data in memory for tests

USAGE:
    # Production
    fs = RealFileSystem()
    pricing = PricingTable(filesystem=fs)

    # Tests (MockFileSystem from conftest.py)
    pricing = PricingTable(config_dir="/cfg", filesystem=mock_fs)
"""

from __future__ import annotations

import os
import shutil
from typing import Protocol

__all__ = ["FileSystem", "RealFileSystem"]


class FileSystem(Protocol):
    """
    Protocol for file system operations.

    All paths are strings (absolute paths expected). Implementations
    include RealFileSystem for production and MockFileSystem for testing.

    Business context: Pricing overrides and PID files are tiny JSON/text
    files. Routing them through this protocol keeps the pricing and
    dashboard code testable without touching the user's home directory.
    """

    def exists(self, path: str) -> bool:
        """
        Check if path exists (file or directory).

        Args:
            path: Absolute path to check for existence.

        Returns:
            True if the path exists as either a file or directory,
            False otherwise. Never raises.
        """
        ...

    def is_file(self, path: str) -> bool:
        """
        Check if path is a regular file.

        Args:
            path: Absolute path to check.

        Returns:
            True if path exists and is a regular file.
        """
        ...

    def makedirs(self, path: str, exist_ok: bool = False) -> None:
        """
        Create directory and all parent directories.

        Equivalent to shell `mkdir -p` when exist_ok is True.

        Args:
            path: Absolute path of directory to create.
            exist_ok: If True, don't raise if directory exists.

        Raises:
            OSError: If directory exists and exist_ok is False.
        """
        ...

    def read_text(self, path: str, encoding: str = "utf-8") -> str:
        """
        Read file contents as text.

        Args:
            path: Absolute path to file to read.
            encoding: Text encoding (default utf-8).

        Returns:
            File contents as a string.

        Raises:
            FileNotFoundError: If file doesn't exist.
        """
        ...

    def write_text(self, path: str, content: str, encoding: str = "utf-8") -> None:
        """
        Write text to file, overwriting existing content.

        Args:
            path: Absolute path to file to write.
            content: String content to write to file.
            encoding: Text encoding (default utf-8).

        Raises:
            PermissionError: If file is read-only.
        """
        ...

    def remove(self, path: str) -> None:
        """
        Remove a file.

        Args:
            path: Absolute path to file to remove.

        Raises:
            FileNotFoundError: If file doesn't exist.
        """
        ...

    def copy_file(self, src: str, dst: str) -> None:
        """
        Copy a file's content to a new location.

        Used by the legacy data directory migration to copy the old store
        and pricing file into the current data directory.

        Args:
            src: Source file path.
            dst: Destination file path (overwritten if present).

        Raises:
            FileNotFoundError: If src doesn't exist.
        """
        ...


class RealFileSystem:
    """
    Real file system implementation using os and shutil.

    This is the production implementation that performs actual I/O.
    Each method delegates directly to the corresponding os, shutil
    or built-in function.
    """

    def exists(self, path: str) -> bool:  # pragma: no cover
        """Delegate to os.path.exists()."""
        return os.path.exists(path)

    def is_file(self, path: str) -> bool:  # pragma: no cover
        """Delegate to os.path.isfile()."""
        return os.path.isfile(path)

    def makedirs(self, path: str, exist_ok: bool = False) -> None:  # pragma: no cover
        """Delegate to os.makedirs()."""
        os.makedirs(path, exist_ok=exist_ok)

    def read_text(self, path: str, encoding: str = "utf-8") -> str:  # pragma: no cover
        """
        Read file contents from disk as text.

        Args:
            path: Absolute path to file to read.
            encoding: Text encoding (default utf-8).

        Returns:
            File contents as a string.

        Raises:
            FileNotFoundError: If file doesn't exist.
        """
        with open(path, encoding=encoding) as f:
            return f.read()

    def write_text(
        self, path: str, content: str, encoding: str = "utf-8"
    ) -> None:  # pragma: no cover
        """
        Write text content to file on disk.

        Args:
            path: Absolute path to file to write.
            content: String content to write.
            encoding: Text encoding (default utf-8).

        Raises:
            PermissionError: If file is read-only.
            OSError: If parent directory doesn't exist.
        """
        with open(path, "w", encoding=encoding) as f:
            f.write(content)

    def remove(self, path: str) -> None:  # pragma: no cover
        """Delegate to os.remove()."""
        os.remove(path)

    def copy_file(self, src: str, dst: str) -> None:  # pragma: no cover
        """Delegate to shutil.copy2(), preserving metadata."""
        shutil.copy2(src, dst)
