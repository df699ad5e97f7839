"""
Session Service - lifecycle controller and shared business logic.

PURPOSE: Orchestrate start/resume/close-stale/end/recover across the store,
the session registry and the budget ledger, scoped by directory so that
independent sessions in different projects never collide.
AI CONTEXT: This is the shared service layer used by cli.py, server.py
(MCP) and the web dashboard. Every public operation returns a ServiceResult;
caller mistakes come back with a stable ``code`` instead of raising.

ARCHITECTURE:
    CLI commands ──┐
    MCP handlers ──┼──► SessionService ──► AccountingStore
    Web routes   ──┘         │  ├──────► BudgetLedger ──► PricingTable
                             │  └──────► SessionRegistry ──► observers
                             └─────────► GitCapability

SLOT STATE MACHINE (slot = working directory or repository root):
    none    ── start ─────────────────► active
    active  ── start ─────────────────► rejected (session_active + hint)
    active  ── start --resume ────────► same session returned
    active  ── start --close-stale ───► all active ended, new session active
    active  ── end ───────────────────► completed (registry released)
    active  ── recover (stale) ───────► completed + auto-recovery note

Store calls run in worker threads (asyncio.to_thread) so the event loop
hosting the observers is never blocked by store contention.

USAGE:
    service = SessionService()
    result = await service.start_session("Fix login", directory="/repo")
    await service.log_ai_usage("anthropic", "claude-sonnet-4", tokens=12000)
    await service.end_session(notes="done")
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import Config
from .errors import (
    AlreadyActiveError,
    ErrorCode,
    NoActiveSessionError,
    SessionNotFoundError,
    TrackerError,
)
from .git import GitCapability
from .ledger import BudgetLedger
from .models import Session
from .pricing import PricingTable
from .registry import SessionRegistry
from .storage import AccountingStore
from .watcher import WatchdogWatcher

__all__ = [
    "SessionService",
    "ServiceResult",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ServiceResult:
    """
    Result from a service operation.

    Provides a consistent return type for all service methods with
    success/failure status and optional data or error message.

    Attributes:
        success: Whether the operation completed successfully.
        message: Human-readable result message.
        data: Optional dict with operation-specific data.
        error: Optional error message if success is False.
        code: Stable machine-readable error code (an ErrorCode value) when
            success is False.
    """

    success: bool
    message: str
    data: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def from_error(cls, exc: TrackerError) -> ServiceResult:
        """
        Build a failed result from a caller-facing error.

        Structured error fields (ids, spent/budget, hint) are carried in
        ``data`` so callers can act on them without parsing the message.

        Example:
            >>> ServiceResult.from_error(NoActiveSessionError()).code
            'no_active_session'
        """
        details = exc.details()
        return cls(
            success=False,
            message=exc.message,
            data=details or None,
            error=exc.message,
            code=exc.code.value,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert this ServiceResult to a JSON-serializable dictionary.

        Produces a minimal dict suitable for MCP protocol responses and CLI
        JSON output. Fields with None/empty values (data, error, code) are
        omitted to keep payloads compact.

        Returns:
            Dict with keys 'success' (bool) and 'message' (str), plus
            optional 'data', 'error' and 'code' when present.

        Example:
            >>> result = ServiceResult(success=True, message="Done", data={"id": 3})
            >>> result.to_dict()
            {'success': True, 'message': 'Done', 'data': {'id': 3}}
        """
        result: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
        }
        if self.data:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.code:
            result["code"] = self.code
        return result


def _internal_failure(action: str, exc: Exception) -> ServiceResult:
    logger.error(f"Error {action}: {exc}")
    return ServiceResult(
        success=False,
        message=f"Failed {action}",
        error=str(exc),
        code=ErrorCode.INTERNAL_ERROR.value,
    )


class SessionService:
    """
    Session lifecycle controller.

    OPERATIONS:
    - start_session: Create (or resume, or close-stale and create) a session
    - end_session: Release tracking resources, back-fill git, complete
    - log_ai_usage: Budget-checked AI usage recording
    - add_note: Annotate the active session
    - recover_sessions: Complete stale sessions left by crashed processes
    - get_status / show_session / list_sessions / get_stats: Reads
    - check_budget / get_pricing: Ledger reads
    - track: Long-running observer loop for one session

    Example:
        >>> service = SessionService()
        >>> result = await service.start_session("Add login", directory="/repo")
        >>> result.data["id"]
        1
    """

    def __init__(
        self,
        store: AccountingStore | None = None,
        ledger: BudgetLedger | None = None,
        pricing: PricingTable | None = None,
        git: GitCapability | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        """Initialize the service with its collaborators.

        All dependencies are optional so production code can use defaults
        (store and pricing under Config.data_dir()) while tests inject a
        temporary store, a fake git capability or a registry with a fake
        watcher.

        Args:
            store: AccountingStore. Default: AccountingStore().
            ledger: BudgetLedger. Default: built from store and pricing.
            pricing: PricingTable. Default: PricingTable().
            git: Git capability. Default: GitCapability().
            registry: SessionRegistry. Default: one using a watchdog watcher.
        """
        self.store = store or AccountingStore()
        self.pricing = pricing or (ledger.pricing if ledger else PricingTable())
        self.ledger = ledger or BudgetLedger(self.store, self.pricing)
        self.git = git or GitCapability()
        self.registry = registry or SessionRegistry(
            self.store, git=self.git, watcher=WatchdogWatcher()
        )

    async def offload(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    # =========================================================================
    # SCOPE RESOLUTION
    # =========================================================================

    async def resolve_scope(self, directory: str | None = None) -> tuple[str, str | None]:
        """
        Resolve a directory and its repository root.

        Args:
            directory: Directory to resolve. Default: current directory.

        Returns:
            Tuple of (absolute directory, repository root or None). When
            git cannot identify a repository the caller falls back to the
            literal directory as the slot.
        """
        resolved = os.path.abspath(directory or os.getcwd())
        root = await self.git.repo_root(resolved)
        return resolved, root

    async def resolve_active(
        self,
        session_id: int | None = None,
        directory: str | None = None,
    ) -> Session:
        """
        Find the active session a command applies to.

        Order: explicit id, then the session occupying the directory's slot,
        then the most recent active session anywhere.

        Raises:
            SessionNotFoundError: Explicit id missing or not active.
            NoActiveSessionError: Nothing active to act on.
        """
        if session_id is not None:
            session = await self.offload(self.store.get_session, session_id)
            if session is None or not session.is_active:
                raise SessionNotFoundError(session_id, f"No active session with id {session_id}")
            return session

        if directory is not None:
            resolved, root = await self.resolve_scope(directory)
            session = await self.offload(self.store.get_active_session_for_dir, resolved, root)
            if session is not None:
                return session

        session = await self.offload(self.store.get_active_session)
        if session is None:
            raise NoActiveSessionError()
        return session

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start_session(
        self,
        name: str,
        directory: str | None = None,
        resume: bool = False,
        close_stale: bool = False,
    ) -> ServiceResult:
        """
        Start a session in a directory's slot.

        Args:
            name: Display name.
            directory: Working directory. Default: current directory.
            resume: Return the slot's active session instead of failing.
            close_stale: End every active session (with an auto-close note)
                before creating the new one.

        Returns:
            ServiceResult with the session in data (plus 'resumed',
            'branch' and 'closed_sessions'). On conflict: code
            'session_active' with the existing id and a hint.

        Example:
            >>> result = await service.start_session("Fix bug", "/repo", resume=True)
            >>> result.data["resumed"]
            False
        """
        try:
            resolved, root = await self.resolve_scope(directory)
            existing = await self.offload(self.store.get_active_session_for_dir, resolved, root)

            if existing is not None and resume:
                logger.info(f"Resumed session {existing.id} in {resolved}")
                branch = await self.git.current_branch(resolved)
                return ServiceResult(
                    success=True,
                    message=f"Resumed session: {existing.name}",
                    data={**existing.to_dict(), "resumed": True, "branch": branch},
                )

            closed: list[int] = []
            if close_stale:
                closed = await self._close_all_active(f'Auto-closed by new session "{name}"')
            elif existing is not None:
                raise AlreadyActiveError(existing)

            head = await self.git.head(root or resolved)
            session_id = await self.offload(
                self.store.create_session,
                name,
                resolved,
                git_root=root,
                start_git_head=head,
            )
            session = await self.offload(self.store.get_session, session_id)
            branch = await self.git.current_branch(resolved)
            logger.info(f"Started session {session_id}: {name}")
            return ServiceResult(
                success=True,
                message=f"Session started: {name}",
                data={
                    **session.to_dict(),
                    "resumed": False,
                    "branch": branch,
                    "closed_sessions": closed,
                },
            )
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("starting session", e)

    async def _close_all_active(self, note: str) -> list[int]:
        active = await self.offload(self.store.get_active_sessions)
        closed = []
        for session in active:
            self.registry.unregister(session.id)
            await self.offload(self.store.end_session, session.id, notes=note)
            closed.append(session.id)
            logger.warning(f"Auto-closed active session {session.id}: {session.name}")
        return closed

    async def end_session(
        self,
        session_id: int | None = None,
        notes: str | None = None,
        directory: str | None = None,
    ) -> ServiceResult:
        """
        End a session and return its full detail.

        Releases the session's registry entry first so no observer writes
        after completion, then back-fills commits and files made since the
        recorded start head, then completes the row.

        Args:
            session_id: Session to end. Default: the directory's (or the
                most recent) active session.
            notes: Free-text end notes.
            directory: Directory used to resolve the session.

        Returns:
            ServiceResult with session detail (session, files, commits,
            ai_usage, notes) in data.
        """
        try:
            session = await self.resolve_active(session_id, directory)
            self.registry.unregister(session.id)
            backfilled = await self.backfill_from_git(session)
            await self.offload(self.store.end_session, session.id, notes=notes)
            detail = await self.offload(self.store.get_session_detail, session.id)
            detail["backfilled"] = backfilled
            return ServiceResult(
                success=True,
                message=f"Session ended: {session.name}",
                data=detail,
            )
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("ending session", e)

    async def backfill_from_git(self, session: Session) -> dict[str, int]:
        """
        Record commits and changed files made since the session's start head.

        Covers sessions that never ran a long-lived observer (agent calls
        using --json). Events already recorded by an observer are skipped.
        Git failures yield nothing to back-fill.

        Returns:
            Dict with 'commits' and 'files' counts of newly recorded events.
        """
        counts = {"commits": 0, "files": 0}
        if not session.start_git_head:
            return counts
        repo = session.git_root or session.working_directory

        try:
            known_hashes = {c.hash for c in await self.offload(self.store.get_commits, session.id)}
            for commit in await self.git.log_commits(repo, session.start_git_head):
                if commit.short_hash in known_hashes:
                    continue
                await self.offload(
                    self.store.record_commit,
                    session.id,
                    commit.short_hash,
                    commit.message,
                    commit.timestamp,
                )
                counts["commits"] += 1

            known_files = {
                (f.file_path, f.change_type)
                for f in await self.offload(self.store.get_file_changes, session.id)
            }
            for path, kind in await self.git.diff_files(repo, session.start_git_head):
                if (path, kind) in known_files:
                    continue
                await self.offload(self.store.record_file_change, session.id, path, kind)
                counts["files"] += 1
        except TrackerError as e:
            logger.warning(f"Session {session.id}: back-fill stopped: {e.message}")

        if counts["commits"] or counts["files"]:
            logger.info(
                f"Session {session.id}: back-filled {counts['commits']} commit(s), "
                f"{counts['files']} file(s)"
            )
        return counts

    async def recover_sessions(
        self, max_age_hours: float = Config.DEFAULT_STALE_HOURS
    ) -> ServiceResult:
        """
        Complete active sessions older than max_age_hours.

        Explicit maintenance operation; nothing calls it automatically.

        Returns:
            ServiceResult with 'recovered' (list of sessions) and 'count'.
        """
        try:
            if max_age_hours < 0:
                return ServiceResult(
                    success=False,
                    message="max_age_hours must be non-negative",
                    error="max_age_hours must be non-negative",
                    code=ErrorCode.INVALID_ARGUMENT.value,
                )
            recovered = await self.offload(self.store.recover_stale_sessions, max_age_hours)
            for session in recovered:
                self.registry.unregister(session.id)
            return ServiceResult(
                success=True,
                message=f"Recovered {len(recovered)} stale session(s)",
                data={
                    "recovered": [s.to_dict() for s in recovered],
                    "count": len(recovered),
                    "max_age_hours": max_age_hours,
                },
            )
        except Exception as e:
            return _internal_failure("recovering sessions", e)

    async def track(
        self,
        session_id: int,
        watch_files: bool = True,
        poll_interval: float | None = None,
        status_interval: float | None = None,
    ) -> Session | None:
        """
        Observe a session until it is ended or this task is cancelled.

        Registers the session's observers, then checks the stored status
        every status_interval seconds; an end issued by another process
        (for example `cs end` in a second terminal) stops the loop. The
        registry entry is always released on exit.

        Args:
            session_id: Session to observe.
            watch_files: Start a filesystem watch.
            poll_interval: Commit poll interval. Default: registry's.
            status_interval: Seconds between status checks. Default: the
                commit poll interval.

        Returns:
            The session as stored when tracking stopped (None if it vanished).

        Raises:
            SessionNotFoundError: If the session does not exist or is not active.
        """
        session = await self.offload(self.store.get_session, session_id)
        if session is None or not session.is_active:
            raise SessionNotFoundError(session_id, f"No active session with id {session_id}")

        interval = poll_interval or self.registry.poll_interval
        self.registry.register(
            session.id,
            session.working_directory,
            repo_path=session.git_root or session.working_directory,
            start_head=session.start_git_head,
            watch_files=watch_files,
            poll_interval=interval,
        )
        try:
            while True:
                await asyncio.sleep(status_interval or interval)
                current = await self.offload(self.store.get_session, session_id)
                if current is None or not current.is_active:
                    logger.info(f"Session {session_id} ended elsewhere, stopping tracker")
                    return current
        finally:
            self.registry.unregister(session_id)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def log_ai_usage(
        self,
        provider: str,
        model: str,
        tokens: int | None = None,
        cost: float | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        session_id: int | None = None,
        directory: str | None = None,
        budget: float | None = None,
        agent_name: str | None = None,
    ) -> ServiceResult:
        """
        Record AI usage on the active session through the budget ledger.

        Returns:
            ServiceResult with the UsageReceipt in data. Failures carry
            codes budget_exceeded (nothing written, data has spent and
            budget), unknown_model, missing_tokens or no_active_session.
            When the budget is met exactly the session is auto-ended and
            data['auto_ended'] is True.
        """
        try:
            session = await self.resolve_active(session_id, directory)
            receipt = await self.offload(
                self.ledger.log_usage,
                session.id,
                provider,
                model,
                tokens=tokens,
                cost=cost,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                budget=budget,
                agent_name=agent_name,
            )
            if receipt.auto_ended:
                self.registry.unregister(session.id)
            message = f"Logged {receipt.tokens} tokens (${receipt.cost:.4f}) to session {session.id}"
            if receipt.auto_ended:
                message += "; budget reached, session ended"
            return ServiceResult(success=True, message=message, data=receipt.to_dict())
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("logging AI usage", e)

    async def add_note(
        self,
        message: str,
        session_id: int | None = None,
        directory: str | None = None,
    ) -> ServiceResult:
        """Append a timestamped note to the active session."""
        try:
            session = await self.resolve_active(session_id, directory)
            note = await self.offload(self.store.add_note, session.id, message)
            return ServiceResult(
                success=True,
                message=f"Note added to session {session.id}",
                data=note.to_dict(),
            )
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("adding note", e)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_status(
        self, session_id: int | None = None, directory: str | None = None
    ) -> ServiceResult:
        """
        Live status of the active session.

        Returns:
            ServiceResult with the session plus 'live_duration', 'branch'
            and 'has_changes'.
        """
        try:
            session = await self.resolve_active(session_id, directory)
            repo = session.git_root or session.working_directory
            return ServiceResult(
                success=True,
                message=f"Active session: {session.name}",
                data={
                    **session.to_dict(),
                    "live_duration": session.live_duration(),
                    "branch": await self.git.current_branch(repo),
                    "has_changes": await self.git.has_changes(repo),
                    "tracked_here": session.id in self.registry,
                },
            )
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("getting status", e)

    async def show_session(self, session_id: int | None = None) -> ServiceResult:
        """Full detail for one session (default: the most recent one)."""
        try:
            if session_id is None:
                latest = await self.offload(self.store.get_sessions, 1)
                if not latest:
                    raise NoActiveSessionError("No sessions recorded yet")
                session_id = latest[0].id
            detail = await self.offload(self.store.get_session_detail, session_id)
            if detail is None:
                raise SessionNotFoundError(session_id)
            return ServiceResult(success=True, message="Session detail", data=detail)
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("showing session", e)

    async def list_sessions(
        self,
        limit: int = 10,
        offset: int = 0,
        status: str | None = None,
        search: str | None = None,
    ) -> ServiceResult:
        """One page of sessions with the unpaged total."""
        try:
            if status is not None and status not in Config.SESSION_STATUSES:
                return ServiceResult(
                    success=False,
                    message="Invalid status filter",
                    error=f"status must be one of: {', '.join(sorted(Config.SESSION_STATUSES))}",
                    code=ErrorCode.INVALID_ARGUMENT.value,
                )
            page = await self.offload(self.store.get_sessions_paginated, limit, offset, status, search)
            page["sessions"] = [s.to_dict() for s in page["sessions"]]
            return ServiceResult(
                success=True,
                message=f"{page['total']} session(s)",
                data=page,
            )
        except Exception as e:
            return _internal_failure("listing sessions", e)

    async def get_stats(self) -> ServiceResult:
        """Aggregate rollup over completed sessions."""
        try:
            stats = await self.offload(self.store.get_stats)
            return ServiceResult(success=True, message="Session statistics", data=stats.to_dict())
        except Exception as e:
            return _internal_failure("computing statistics", e)

    async def check_budget(
        self,
        budget: float | None,
        estimated_cost: float = 0.0,
        session_id: int | None = None,
        directory: str | None = None,
    ) -> ServiceResult:
        """Read-only budget check for the active session."""
        try:
            session = await self.resolve_active(session_id, directory)
            status = await self.offload(self.ledger.check_budget, session.id, budget, estimated_cost)
            verdict = "within budget" if status["can_afford"] else "would exceed budget"
            return ServiceResult(success=True, message=verdict, data=status)
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("checking budget", e)

    async def get_pricing(self) -> ServiceResult:
        """Merged pricing table and the override file path."""
        try:
            table = await self.offload(self.pricing.load)
            return ServiceResult(
                success=True,
                message=f"{len(table)} priced model(s)",
                data={"pricing": table, "path": self.pricing.path},
            )
        except Exception as e:
            return _internal_failure("loading pricing", e)

    async def session_diff(
        self, session_id: int, path: str | None = None, commit: str | None = None
    ) -> ServiceResult:
        """
        Unified diff of a session's work.

        Args:
            session_id: Session whose repository is diffed.
            path: Restrict to one file.
            commit: Diff a single commit instead of start-head..HEAD.

        Returns:
            ServiceResult with 'diff' text ("" when git has nothing).
        """
        try:
            session = await self.offload(self.store.get_session, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            repo = session.git_root or session.working_directory
            if commit:
                text = await self.git.commit_diff(repo, commit, path)
            elif session.start_git_head:
                text = await self.git.diff(repo, session.start_git_head, None, path)
            else:
                text = ""
            return ServiceResult(
                success=True,
                message="Session diff",
                data={"session_id": session_id, "diff": text},
            )
        except TrackerError as e:
            return ServiceResult.from_error(e)
        except Exception as e:
            return _internal_failure("computing diff", e)
