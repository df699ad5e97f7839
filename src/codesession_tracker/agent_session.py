"""
Agent sessions - programmatic API for AI agents.

PURPOSE: Let agent code track a run (files, commits, AI cost) with a hard
budget, without going through the CLI.
AI CONTEXT: Thin async wrapper over SessionService. Unlike `cs start`, an
agent session does not apply the one-session-per-directory policy: several
agents may work in the same tree at once, each with its own registry entry.

USAGE:
    async with AgentSession("Refactor auth", budget=5.0, directory="./src") as session:
        response = await client.messages.create(...)
        await session.log_ai("anthropic", "claude-sonnet-4",
                             prompt_tokens=response.usage.input_tokens,
                             completion_tokens=response.usage.output_tokens)
    print(session.summary.ai_cost)

    # or
    summary = await run_agent_session("Fix lint", agent_fn, budget=3.0)

BUDGET BEHAVIOUR:
- log_ai raises BudgetExceededError before anything is written when the
  call would push spend past the budget (on_budget_exceeded is called first)
- when spend lands exactly on the budget, the session ends automatically
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from .config import Config
from .errors import BudgetExceededError, TrackerError
from .ledger import can_afford
from .session_service import SessionService

__all__ = ["AgentSession", "AgentSessionSummary", "BudgetExceededError", "run_agent_session"]

logger = logging.getLogger(__name__)


@dataclass
class AgentSessionSummary:
    """Final accounting for an agent run."""

    session_id: int
    name: str
    duration: int
    files_changed: int
    commits: int
    ai_cost: float
    ai_tokens: int
    budget_remaining: float | None
    files: list[dict[str, Any]] = field(default_factory=list)
    commit_list: list[dict[str, Any]] = field(default_factory=list)
    ai_usage_breakdown: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AgentSession:
    """
    One tracked agent run.

    Args:
        name: Session display name.
        budget: Hard spend cap in dollars. None for no cap.
        directory: Directory to watch. Default: current directory.
        git: Poll for commits.
        git_poll_interval: Seconds between commit polls.
        watch_files: Watch the directory for file changes.
        on_budget_exceeded: Called with (spent, budget) before the
            BudgetExceededError is raised.
        on_ai_usage: Called with (cost, total_cost, model) after each log.
        on_file_change: Called with (path, kind) after each recorded change.
        metadata: Arbitrary data echoed back in the summary.
        service: SessionService to use. Default: a new one.
    """

    def __init__(
        self,
        name: str,
        budget: float | None = None,
        directory: str | None = None,
        git: bool = True,
        git_poll_interval: float = Config.AGENT_COMMIT_POLL_INTERVAL_SECONDS,
        watch_files: bool = True,
        on_budget_exceeded: Callable[[float, float], Any] | None = None,
        on_ai_usage: Callable[[float, float, str], Any] | None = None,
        on_file_change: Callable[[str, str], Any] | None = None,
        metadata: dict[str, Any] | None = None,
        service: SessionService | None = None,
    ) -> None:
        self.name = name
        self.budget = budget
        self.directory = directory
        self.git = git
        self.git_poll_interval = git_poll_interval
        self.watch_files = watch_files
        self.on_budget_exceeded = on_budget_exceeded
        self.on_ai_usage = on_ai_usage
        self.on_file_change = on_file_change
        self.metadata = metadata
        self.service = service or SessionService()

        self._session_id: int | None = None
        self._spent = 0.0
        self._tokens = 0
        self._started = False
        self._ended = False
        self.summary: AgentSessionSummary | None = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def id(self) -> int | None:
        """Store session id (None until started)."""
        return self._session_id

    @property
    def spent(self) -> float:
        return self._spent

    @property
    def tokens(self) -> int:
        return self._tokens

    @property
    def is_active(self) -> bool:
        return self._started and not self._ended

    @property
    def budget_remaining(self) -> float | None:
        """Remaining budget in dollars, or None when no budget is set."""
        if self.budget is None:
            return None
        return max(0.0, self.budget - self._spent)

    def can_afford(self, estimated_cost: float) -> bool:
        """Pre-flight check: would a call of this cost stay within budget?"""
        return can_afford(self._spent, estimated_cost, self.budget)

    def _assert_active(self) -> None:
        if not self._started:
            raise RuntimeError(f'Session "{self.name}" has not been started. Call start() first.')
        if self._ended:
            raise RuntimeError(f'Session "{self.name}" has already ended.')

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> int:
        """
        Create the session and start file watching and commit polling.

        Returns:
            The session id.

        Raises:
            RuntimeError: If already started or already ended.
        """
        if self._started:
            raise RuntimeError(f'Session "{self.name}" is already started.')
        if self._ended:
            raise RuntimeError(
                f'Session "{self.name}" has already ended. Create a new AgentSession.'
            )

        service = self.service
        resolved, root = await service.resolve_scope(self.directory)
        head = await service.git.head(root or resolved) if self.git else None
        self._session_id = await service.offload(
            service.store.create_session,
            self.name,
            resolved,
            git_root=root,
            start_git_head=head,
        )
        service.registry.register(
            self._session_id,
            resolved,
            repo_path=root or resolved,
            start_head=head,
            watch_files=self.watch_files,
            poll_commits=self.git,
            poll_interval=self.git_poll_interval,
            on_file_change=self.on_file_change,
        )
        self._started = True
        logger.info(f"Agent session {self._session_id} started: {self.name}")
        return self._session_id

    async def log_ai(
        self,
        provider: str,
        model: str,
        tokens: int | None = None,
        cost: float | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        agent_name: str | None = None,
    ) -> float | None:
        """
        Record one AI call against this session's budget.

        Cost is estimated from the pricing table when omitted.

        Returns:
            Remaining budget (None when no budget is set).

        Raises:
            BudgetExceededError: The call would exceed the budget; nothing
                was recorded.
            UnknownModelError / MissingTokensError: Bad usage input.
            RuntimeError: Session not started or already ended.
        """
        self._assert_active()
        assert self._session_id is not None
        try:
            receipt = await self.service.offload(
                self.service.ledger.log_usage,
                self._session_id,
                provider,
                model,
                tokens=tokens,
                cost=cost,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                budget=self.budget,
                agent_name=agent_name,
            )
        except BudgetExceededError as e:
            if self.on_budget_exceeded is not None:
                self.on_budget_exceeded(e.spent, e.budget)
            raise

        self._spent = receipt.total_cost
        self._tokens = receipt.total_tokens
        if self.on_ai_usage is not None:
            self.on_ai_usage(receipt.cost, receipt.total_cost, model)

        if receipt.auto_ended:
            await self._finish_after_auto_end()
        return self.budget_remaining

    async def _finish_after_auto_end(self) -> None:
        service = self.service
        assert self._session_id is not None
        service.registry.unregister(self._session_id)
        session = await service.offload(service.store.get_session, self._session_id)
        if session is not None:
            await service.backfill_from_git(session)
        self._ended = True
        self.summary = await self._build_summary()

    async def end(self, notes: str | None = None) -> AgentSessionSummary:
        """
        Stop tracking, complete the session and return its summary.

        Raises:
            RuntimeError: Session not started or already ended.
            TrackerError: The store could not end the session.
        """
        self._assert_active()
        result = await self.service.end_session(session_id=self._session_id, notes=notes)
        if not result.success:
            raise TrackerError(result.message)
        self._ended = True
        self.summary = await self._build_summary()
        logger.info(f"Agent session {self._session_id} ended: ${self.summary.ai_cost:.4f}")
        return self.summary

    async def _build_summary(self) -> AgentSessionSummary:
        assert self._session_id is not None
        detail = await self.service.offload(self.service.store.get_session_detail, self._session_id)
        session = detail["session"]
        remaining = None
        if self.budget is not None:
            remaining = max(0.0, self.budget - session["ai_cost"])
        return AgentSessionSummary(
            session_id=self._session_id,
            name=self.name,
            duration=session["duration"] or 0,
            files_changed=session["files_changed"],
            commits=session["commits"],
            ai_cost=session["ai_cost"],
            ai_tokens=session["ai_tokens"],
            budget_remaining=remaining,
            files=[
                {"path": f["file_path"], "type": f["change_type"], "timestamp": f["timestamp"]}
                for f in detail["files"]
            ],
            commit_list=[
                {"hash": c["hash"], "message": c["message"], "timestamp": c["timestamp"]}
                for c in detail["commits"]
            ],
            ai_usage_breakdown=[
                {
                    "provider": u["provider"],
                    "model": u["model"],
                    "tokens": u["tokens"],
                    "cost": u["cost"],
                    "timestamp": u["timestamp"],
                }
                for u in detail["ai_usage"]
            ],
            metadata=self.metadata,
        )

    # =========================================================================
    # CONTEXT MANAGER
    # =========================================================================

    async def __aenter__(self) -> AgentSession:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        if not self.is_active:
            return
        if exc is None:
            await self.end()
        elif isinstance(exc, BudgetExceededError):
            await self.end(f"Budget exceeded: {exc.message}")
        else:
            await self.end(f"Error: {exc}")


async def run_agent_session(
    name: str,
    agent_fn: Callable[[AgentSession], Awaitable[Any]],
    **config: Any,
) -> AgentSessionSummary:
    """
    Run an agent function inside a tracked session.

    A BudgetExceededError raised by the agent ends the session and the
    summary is returned normally. Any other exception ends the session with
    an error note and propagates.

    Args:
        name: Session name.
        agent_fn: Coroutine function receiving the AgentSession.
        **config: AgentSession keyword arguments (budget, directory...).

    Returns:
        The session summary.

    Example:
        >>> async def agent(session):
        ...     await session.log_ai("openai", "gpt-4o", tokens=5000, cost=0.05)
        >>> summary = await run_agent_session("Fix lint", agent, budget=3.0)
    """
    session = AgentSession(name, **config)
    try:
        async with session:
            await agent_fn(session)
    except BudgetExceededError as e:
        logger.info(f"Agent session {session.id} stopped: {e.message}")
    assert session.summary is not None
    return session.summary
