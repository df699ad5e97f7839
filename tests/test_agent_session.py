"""Tests for the programmatic agent session API."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Add tests directory to path for conftest imports
sys.path.insert(0, str(Path(__file__).parent))

from codesession_tracker.agent_session import (
    AgentSession,
    AgentSessionSummary,
    BudgetExceededError,
    run_agent_session,
)
from codesession_tracker.errors import UnknownModelError
from codesession_tracker.session_service import SessionService
from codesession_tracker.storage import AccountingStore
from conftest import FakeGit, FakeWatcher


def _agent(service: SessionService, name: str = "Agent run", **kwargs: object) -> AgentSession:
    kwargs.setdefault("directory", "/repo")
    kwargs.setdefault("git_poll_interval", 0.01)
    return AgentSession(name, service=service, **kwargs)  # type: ignore[arg-type]


class TestLifecycle:
    """start / end and state guards."""

    def test_start_and_end(self, service: SessionService, store: AccountingStore) -> None:
        async def scenario() -> AgentSessionSummary:
            session = _agent(service, metadata={"ticket": "AUTH-12"})
            sid = await session.start()
            assert session.id == sid
            assert session.is_active
            assert sid in service.registry
            await session.log_ai("openai", "gpt-4o", tokens=1000, cost=0.02)
            summary = await session.end("all done")
            assert not session.is_active
            assert sid not in service.registry
            return summary

        summary = asyncio.run(scenario())
        assert summary.ai_cost == 0.02
        assert summary.ai_tokens == 1000
        assert summary.budget_remaining is None
        assert summary.metadata == {"ticket": "AUTH-12"}
        assert summary.ai_usage_breakdown[0]["model"] == "gpt-4o"
        stored = store.get_session(summary.session_id)
        assert stored is not None and stored.notes == "all done"

    def test_agents_share_a_directory(self, service: SessionService) -> None:
        """Two agents in the same tree each get their own session."""

        async def scenario() -> tuple[int, int]:
            one = _agent(service, "One")
            two = _agent(service, "Two")
            ids = (await one.start(), await two.start())
            await one.end()
            await two.end()
            return ids

        first, second = asyncio.run(scenario())
        assert first != second

    def test_log_before_start(self, service: SessionService) -> None:
        session = _agent(service)
        with pytest.raises(RuntimeError, match="has not been started"):
            asyncio.run(session.log_ai("openai", "gpt-4o", tokens=1, cost=0.0))

    def test_double_start_and_end(self, service: SessionService) -> None:
        async def scenario() -> None:
            session = _agent(service)
            await session.start()
            with pytest.raises(RuntimeError, match="already started"):
                await session.start()
            await session.end()
            with pytest.raises(RuntimeError, match="already ended"):
                await session.end()

        asyncio.run(scenario())

    def test_git_disabled_skips_head_and_polling(
        self, service: SessionService, store: AccountingStore, fake_git: FakeGit
    ) -> None:
        fake_git.add_commit("a" * 40, "Base")

        async def scenario() -> AgentSessionSummary:
            session = _agent(service, watch_files=False, git=False)
            await session.start()
            fake_git.add_commit("d" * 40, "Agent commit")
            return await session.end()

        summary = asyncio.run(scenario())
        assert store.get_session(summary.session_id).start_git_head is None  # type: ignore[union-attr]
        assert summary.commits == 0

    def test_file_changes_reach_summary(
        self, service: SessionService, fake_watcher: FakeWatcher
    ) -> None:
        seen: list[tuple[str, str]] = []

        async def scenario() -> AgentSessionSummary:
            session = _agent(service, on_file_change=lambda p, k: seen.append((p, k)))
            await session.start()
            fake_watcher.emit("src/auth.py", "modified")
            for _ in range(100):
                if seen:
                    break
                await asyncio.sleep(0.01)
            return await session.end()

        summary = asyncio.run(scenario())
        assert seen == [("src/auth.py", "modified")]
        assert summary.files_changed == 1
        assert summary.files[0]["path"] == "src/auth.py"


class TestBudget:
    """Budget enforcement inside an agent run."""

    def test_budget_exceeded_nothing_recorded(self, service: SessionService) -> None:
        """Verifies the callback fires and the rejected call is not billed.

        Arrangement:
        $1.00 budget with $0.90 already spent.

        Action:
        Log a $0.20 call.

        Assertion Strategy:
        BudgetExceededError is raised, the callback saw (1.1, 1.0), and
        spend stays at $0.90.
        """
        breaches: list[tuple[float, float]] = []

        async def scenario() -> AgentSession:
            session = _agent(service, budget=1.0, on_budget_exceeded=lambda s, b: breaches.append((s, b)))
            await session.start()
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.9)
            with pytest.raises(BudgetExceededError):
                await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.2)
            await session.end()
            return session

        session = asyncio.run(scenario())
        assert breaches == [(1.1, 1.0)]
        assert session.spent == 0.9
        assert session.summary is not None and session.summary.ai_cost == 0.9

    def test_exact_budget_auto_ends(self, service: SessionService, store: AccountingStore) -> None:
        async def scenario() -> AgentSession:
            session = _agent(service, budget=0.5)
            await session.start()
            remaining = await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.5)
            assert remaining == 0.0
            return session

        session = asyncio.run(scenario())
        assert not session.is_active
        assert session.summary is not None
        assert session.summary.budget_remaining == 0.0
        stored = store.get_session(session.summary.session_id)
        assert stored is not None
        assert stored.notes == "Budget reached: $0.50 / $0.50"

    def test_can_afford_and_remaining(self, service: SessionService) -> None:
        async def scenario() -> None:
            session = _agent(service, budget=2.0)
            await session.start()
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=1.5)
            assert session.budget_remaining == 0.5
            assert session.can_afford(0.5)
            assert not session.can_afford(0.51)
            await session.end()

        asyncio.run(scenario())

    def test_usage_callback(self, service: SessionService) -> None:
        calls: list[tuple[float, float, str]] = []

        async def scenario() -> None:
            session = _agent(service, on_ai_usage=lambda c, t, m: calls.append((c, t, m)))
            await session.start()
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.1)
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.2)
            await session.end()

        asyncio.run(scenario())
        assert calls == [(0.1, 0.1, "gpt-4o"), (0.2, 0.3, "gpt-4o")]

    def test_unknown_model_propagates(self, service: SessionService) -> None:
        async def scenario() -> None:
            session = _agent(service)
            await session.start()
            try:
                with pytest.raises(UnknownModelError):
                    await session.log_ai("acme", "mystery", tokens=10)
            finally:
                await session.end()

        asyncio.run(scenario())


class TestContextManagerAndRunner:
    """async with and run_agent_session."""

    def test_context_manager_ends_on_error(
        self, service: SessionService, store: AccountingStore
    ) -> None:
        holder: dict[str, AgentSession] = {}

        async def scenario() -> None:
            async with _agent(service) as session:
                holder["session"] = session
                raise ValueError("tool crashed")

        with pytest.raises(ValueError):
            asyncio.run(scenario())
        session = holder["session"]
        assert not session.is_active
        stored = store.get_session(session.id)  # type: ignore[arg-type]
        assert stored is not None
        assert stored.notes == "Error: tool crashed"

    def test_run_agent_session_returns_summary(self, service: SessionService) -> None:
        async def agent(session: AgentSession) -> None:
            await session.log_ai("anthropic", "claude-sonnet-4", tokens=1_000_000)

        summary = asyncio.run(
            run_agent_session("Runner", agent, service=service, directory="/repo", git_poll_interval=0.01)
        )
        assert summary.name == "Runner"
        assert summary.ai_cost == 6.6

    def test_run_agent_session_swallows_budget_breach(
        self, service: SessionService, store: AccountingStore
    ) -> None:
        """A budget breach ends the run normally and is noted on the session."""

        async def agent(session: AgentSession) -> None:
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.4)
            await session.log_ai("openai", "gpt-4o", tokens=10, cost=0.4)

        summary = asyncio.run(
            run_agent_session(
                "Capped", agent, service=service, budget=0.5, directory="/repo", git_poll_interval=0.01
            )
        )
        assert summary.ai_cost == 0.4
        stored = store.get_session(summary.session_id)
        assert stored is not None
        assert (stored.notes or "").startswith("Budget exceeded:")

    def test_run_agent_session_propagates_other_errors(self, service: SessionService) -> None:
        async def agent(session: AgentSession) -> None:
            raise KeyError("boom")

        with pytest.raises(KeyError):
            asyncio.run(run_agent_session("Broken", agent, service=service, directory="/repo"))
