"""Tests for the MCP server protocol layer.

AI CONTEXT: The server is exercised through handle_message() with the
service fixture (temporary store, FakeGit, FakeWatcher). run() is driven
once end to end with a StringIO stdin.
"""

from __future__ import annotations

import asyncio
import io
import json
import sys
from pathlib import Path
from typing import Any

import pytest

# Add tests directory to path for conftest imports
sys.path.insert(0, str(Path(__file__).parent))

from codesession_tracker.__version__ import __version__
from codesession_tracker.config import Config
from codesession_tracker.server import SessionTrackerServer
from codesession_tracker.session_service import SessionService
from conftest import FakeWatcher


@pytest.fixture
def server(service: SessionService) -> SessionTrackerServer:
    return SessionTrackerServer(service=service)


def _call(server: SessionTrackerServer, tool: str, msg_id: int = 1, **arguments: Any) -> dict[str, Any]:
    return asyncio.run(
        server.handle_message(
            {
                "jsonrpc": "2.0",
                "id": msg_id,
                "method": "tools/call",
                "params": {"name": tool, "arguments": arguments},
            }
        )
    )  # type: ignore[return-value]


def _payload(response: dict[str, Any]) -> dict[str, Any]:
    return json.loads(response["result"]["content"][0]["text"])


class TestProtocol:
    """initialize, tools/list, notifications and unknown methods."""

    def test_initialize(self, server: SessionTrackerServer) -> None:
        response = asyncio.run(server.handle_message({"method": "initialize", "id": 0}))
        assert response is not None
        result = response["result"]
        assert result["protocolVersion"] == Config.MCP_VERSION
        assert result["serverInfo"] == {"name": Config.SERVER_NAME, "version": __version__}
        assert "tools" in result["capabilities"]

    def test_tools_list(self, server: SessionTrackerServer) -> None:
        response = asyncio.run(server.handle_message({"method": "tools/list", "id": 2}))
        assert response is not None
        tools = {t["name"]: t for t in response["result"]["tools"]}
        assert set(tools) == {
            "session_status",
            "start_session",
            "end_session",
            "log_ai_usage",
            "add_note",
            "get_stats",
            "list_sessions",
            "check_budget",
            "recover_sessions",
            "get_pricing",
        }
        assert tools["start_session"]["inputSchema"]["required"] == ["name"]
        assert tools["log_ai_usage"]["inputSchema"]["required"] == ["provider", "model"]
        assert "required" not in tools["get_stats"]["inputSchema"]

    def test_notification_has_no_response(self, server: SessionTrackerServer) -> None:
        assert asyncio.run(server.handle_message({"method": "notifications/initialized"})) is None

    def test_unknown_method(self, server: SessionTrackerServer) -> None:
        response = asyncio.run(server.handle_message({"method": "resources/list", "id": 5}))
        assert response is not None
        assert response["error"]["code"] == -32601
        assert response["id"] == 5

    def test_unknown_tool(self, server: SessionTrackerServer) -> None:
        response = _call(server, "delete_everything")
        assert response["error"]["code"] == -32601


class TestToolCalls:
    """tools/call dispatch and result shapes."""

    def test_start_without_tracking(self, server: SessionTrackerServer) -> None:
        response = _call(server, "start_session", name="MCP work", directory="/repo", track=False)
        payload = _payload(response)
        assert "isError" not in response["result"]
        assert payload["success"] is True
        assert payload["data"]["name"] == "MCP work"
        assert len(server.service.registry) == 0

    def test_start_tracks_in_process(
        self, server: SessionTrackerServer, fake_watcher: FakeWatcher
    ) -> None:
        """Verifies sessions started over MCP are observed by the server.

        Business context:
        The MCP server is the long-lived process an agent talks to, so it
        hosts the session's watcher and commit poller until end_session.
        """

        async def scenario() -> tuple[int, bool]:
            start = await server.handle_message(
                {
                    "id": 1,
                    "method": "tools/call",
                    "params": {"name": "start_session", "arguments": {"name": "Live", "directory": "/repo"}},
                }
            )
            sid = _payload(start)["data"]["id"]  # type: ignore[arg-type]
            tracked = sid in server.service.registry
            await server.handle_message(
                {"id": 2, "method": "tools/call", "params": {"name": "end_session", "arguments": {}}}
            )
            return sid, tracked and sid not in server.service.registry

        _, released = asyncio.run(scenario())
        assert released
        assert fake_watcher.handles[0].closed

    def test_conflict_is_tool_error(self, server: SessionTrackerServer) -> None:
        _call(server, "start_session", name="First", directory="/repo", track=False)
        response = _call(server, "start_session", name="Second", directory="/repo", track=False)
        assert response["result"]["isError"] is True
        payload = _payload(response)
        assert payload["code"] == "session_active"
        assert payload["data"]["active_session"] == "First"

    def test_log_usage_defaults_agent_name(
        self, server: SessionTrackerServer
    ) -> None:
        _call(server, "start_session", name="AI", directory="/repo", track=False)
        response = _call(
            server, "log_ai_usage", provider="anthropic", model="claude-sonnet-4",
            prompt_tokens=1000, completion_tokens=200,
        )
        payload = _payload(response)
        assert payload["data"]["estimated"] is True
        sid = payload["data"]["session_id"]
        usage = server.service.store.get_ai_usage(sid)
        assert usage[0].agent_name == Config.DEFAULT_AGENT_NAME

    def test_log_usage_budget_exceeded(self, server: SessionTrackerServer) -> None:
        _call(server, "start_session", name="AI", directory="/repo", track=False)
        response = _call(
            server, "log_ai_usage", provider="openai", model="gpt-4o", tokens=10, cost=2.0, budget=1.0
        )
        assert response["result"]["isError"] is True
        assert _payload(response)["code"] == "budget_exceeded"

    def test_missing_required_argument(self, server: SessionTrackerServer) -> None:
        response = _call(server, "add_note")
        assert response["error"]["code"] == -32602
        assert "message" in response["error"]["message"]

    def test_wrong_argument_type(self, server: SessionTrackerServer) -> None:
        response = _call(server, "log_ai_usage", provider="openai", model="gpt-4o", tokens="lots")
        assert response["error"]["code"] == -32602

    def test_note_status_and_end(self, server: SessionTrackerServer) -> None:
        _call(server, "start_session", name="Flow", directory="/repo", track=False)
        assert _payload(_call(server, "add_note", message="checkpoint"))["success"]
        status = _payload(_call(server, "session_status", directory="/repo"))
        assert status["data"]["name"] == "Flow"
        ended = _payload(_call(server, "end_session", notes="shipped"))
        assert ended["data"]["session"]["notes"] == "shipped"
        assert [n["message"] for n in ended["data"]["notes"]] == ["checkpoint"]

    def test_stats_include_active_count(self, server: SessionTrackerServer) -> None:
        _call(server, "start_session", name="Running", directory="/repo", track=False)
        payload = _payload(_call(server, "get_stats"))
        assert payload["data"]["active_sessions"] == 1
        assert payload["data"]["total_sessions"] == 0

    def test_list_check_budget_recover_pricing(self, server: SessionTrackerServer) -> None:
        _call(server, "start_session", name="Everything", directory="/repo", track=False)

        listed = _payload(_call(server, "list_sessions", limit=5, status="active"))
        assert listed["data"]["total"] == 1

        budget = _payload(_call(server, "check_budget", budget=5.0, estimated_cost=1.0))
        assert budget["data"]["can_afford"] is True

        recovered = _payload(_call(server, "recover_sessions", max_age_hours=48))
        assert recovered["data"]["count"] == 0

        pricing = _payload(_call(server, "get_pricing"))
        assert "claude-sonnet-4" in pricing["data"]["pricing"]

    def test_internal_error_is_32603(self, server: SessionTrackerServer, monkeypatch: pytest.MonkeyPatch) -> None:
        async def explode(**kwargs: Any) -> None:
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(server.service, "get_pricing", explode)
        response = _call(server, "get_pricing")
        assert response["error"]["code"] == -32603


class TestRun:
    """stdio loop."""

    def test_run_processes_lines_until_eof(
        self,
        server: SessionTrackerServer,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Verifies one response line per request, none for notifications.

        Arrangement:
        stdin holds initialize, a notification, a blank line, invalid JSON
        and tools/list.

        Assertion Strategy:
        Three JSON lines on stdout: initialize result, parse error and
        the tool list.
        """
        lines = [
            json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}),
            json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
            "",
            "{not json",
            json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
        ]
        monkeypatch.setattr(sys, "stdin", io.StringIO("\n".join(lines) + "\n"))

        asyncio.run(server.run())

        out = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        assert [r.get("id") for r in out] == [1, None, 2]
        assert out[1]["error"]["code"] == -32700
        assert len(out[2]["result"]["tools"]) == 10
