"""
Git capability for codesession.

PURPOSE: Minimal asynchronous wrapper around the git CLI used by the commit
observer, the lifecycle controller (repo root, start head, back-fill) and
the dashboard (diffs).
AI CONTEXT: Every call runs `git` as a child process with a bounded timeout
(Config.GIT_TIMEOUT_SECONDS). "Not a repository", "no commits yet", a
missing git binary and timeouts all produce an empty result (None, "" or
[]), never an exception. Callers treat empty as "nothing to report".

USAGE:
    git = GitCapability()
    root = await git.repo_root("/repo/src")      # "/repo" or None
    latest = await git.latest_commit("/repo")    # CommitInfo or None
"""

from __future__ import annotations

import asyncio
import logging
import subprocess  # nosec B404
from dataclasses import dataclass

from .config import Config
from .models import now_iso

__all__ = ["CommitInfo", "GitCapability", "SHORT_HASH_LENGTH"]

logger = logging.getLogger(__name__)

SHORT_HASH_LENGTH = 7
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = f"%H{_FIELD_SEP}%s{_FIELD_SEP}%aI{_RECORD_SEP}"


@dataclass(frozen=True)
class CommitInfo:
    """One commit as reported by git log."""

    hash: str
    message: str
    timestamp: str

    @property
    def short_hash(self) -> str:
        return self.hash[:SHORT_HASH_LENGTH]


def _parse_log(output: str) -> list[CommitInfo]:
    commits = []
    for record in output.split(_RECORD_SEP):
        record = record.strip()
        if not record:
            continue
        parts = record.split(_FIELD_SEP)
        if len(parts) != 3:
            continue
        full_hash, subject, timestamp = parts
        commits.append(CommitInfo(hash=full_hash, message=subject, timestamp=timestamp or now_iso()))
    return commits


def _stripped(output: str | None) -> str | None:
    return (output or "").strip() or None


def _change_kind(status: str) -> str:
    if status.startswith("A"):
        return "created"
    if status.startswith("D"):
        return "deleted"
    # M, R (rename), C, T all count as modifications
    return "modified"


class GitCapability:
    """
    Async git queries with timeout and error tolerance.

    Args:
        timeout: Seconds before a git invocation is killed.
        executable: git binary name or path.
    """

    def __init__(
        self,
        timeout: float = Config.GIT_TIMEOUT_SECONDS,
        executable: str = "git",
    ) -> None:
        self.timeout = timeout
        self.executable = executable

    async def _run(self, cwd: str, *args: str) -> str | None:
        """
        Run one git command in cwd.

        Returns:
            stdout text on exit code 0, otherwise None.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"git {args[0]} could not start in {cwd}: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"git {args[0]} timed out after {self.timeout}s in {cwd}")
            return None

        if proc.returncode != 0:
            logger.debug(
                f"git {args[0]} failed in {cwd}: {stderr.decode('utf-8', 'replace').strip()}"
            )
            return None
        return stdout.decode("utf-8", "replace")

    # =========================================================================
    # REPOSITORY STATE
    # =========================================================================

    async def repo_root(self, cwd: str) -> str | None:
        """Top-level directory of the repository containing cwd, or None."""
        out = await self._run(cwd, "rev-parse", "--show-toplevel")
        return _stripped(out)

    async def head(self, cwd: str) -> str | None:
        """Full hash of HEAD, or None (not a repo or no commits yet)."""
        out = await self._run(cwd, "rev-parse", "HEAD")
        return _stripped(out)

    async def current_branch(self, cwd: str) -> str | None:
        """Current branch name ("HEAD" when detached), or None."""
        out = await self._run(cwd, "rev-parse", "--abbrev-ref", "HEAD")
        return _stripped(out)

    async def has_changes(self, cwd: str) -> bool | None:
        """True if the working tree is dirty, None if cwd is not a repo."""
        out = await self._run(cwd, "status", "--porcelain")
        return None if out is None else bool(out.strip())

    async def latest_commit(self, cwd: str) -> CommitInfo | None:
        """
        Most recent commit on HEAD.

        Returns:
            CommitInfo, or None if cwd is not a repository, has no commits
            yet, or git failed.
        """
        out = await self._run(cwd, "log", "-1", f"--format={_LOG_FORMAT}")
        if not out:
            return None
        commits = _parse_log(out)
        return commits[0] if commits else None

    async def log_commits(self, cwd: str, from_ref: str) -> list[CommitInfo]:
        """
        Commits reachable from HEAD but not from from_ref, oldest first.

        Used to back-fill commits made during a session that had no
        long-running observer.
        """
        out = await self._run(
            cwd, "log", "--reverse", f"--format={_LOG_FORMAT}", f"{from_ref}..HEAD"
        )
        return _parse_log(out) if out else []

    # =========================================================================
    # DIFFS
    # =========================================================================

    async def diff_files(self, cwd: str, from_ref: str) -> list[tuple[str, str]]:
        """
        Files changed between from_ref and HEAD.

        Returns:
            List of (path, change kind) where kind is created, modified or
            deleted. Renames report the new path as modified.
        """
        out = await self._run(cwd, "diff", "--name-status", f"{from_ref}..HEAD")
        if not out:
            return []
        changes = []
        for line in out.splitlines():
            if not line.strip():
                continue
            status, *paths = line.split("\t")
            if not paths:
                continue
            changes.append((paths[-1], _change_kind(status)))
        return changes

    async def diff(
        self,
        cwd: str,
        from_ref: str,
        to_ref: str | None = None,
        path: str | None = None,
    ) -> str:
        """
        Unified diff (5 lines of context) between two refs.

        Args:
            cwd: Repository directory.
            from_ref: Start ref.
            to_ref: End ref. Default: HEAD.
            path: Restrict the diff to one file.

        Returns:
            Diff text, "" on any failure.
        """
        args = ["diff", "--unified=5", f"{from_ref}..{to_ref or 'HEAD'}"]
        if path:
            args.extend(["--", path])
        return await self._run(cwd, *args) or ""

    async def commit_diff(self, cwd: str, commit_hash: str, path: str | None = None) -> str:
        """Diff introduced by a single commit, "" on any failure."""
        args = ["diff", "--unified=5", f"{commit_hash}~1", commit_hash]
        if path:
            args.extend(["--", path])
        return await self._run(cwd, *args) or ""
