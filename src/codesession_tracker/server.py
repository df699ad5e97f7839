"""
codesession MCP Server.

PURPOSE: Model Context Protocol server so MCP clients (coding agents) can
start sessions, log AI usage, check budgets and read stats in context.
AI CONTEXT: Thin protocol layer over SessionService. Every tool maps to one
service call; the ServiceResult is returned as JSON text content.

MCP PROTOCOL OVERVIEW:
JSON-RPC 2.0 over stdin/stdout, one message per line. Logging goes to
stderr so stdout only ever carries protocol messages.

AVAILABLE TOOLS:
1. session_status   - Live status of the active session
2. start_session    - Start (or resume) a session for a directory
3. end_session      - End the active session and return its summary
4. log_ai_usage     - Record token usage and cost (budget-checked)
5. add_note         - Timestamped annotation on the active session
6. get_stats        - Totals across completed sessions
7. list_sessions    - Recent sessions, paged
8. check_budget     - Spend so far and whether a call is affordable
9. recover_sessions - Complete stale sessions left by crashed processes
10. get_pricing     - Current pricing table (per 1M tokens)

TOOL RESULTS:
- success: content text is the ServiceResult dict as JSON
- caller mistake (no session, budget exceeded...): same shape with
  "isError": true, so the agent sees the error code and message
- malformed arguments: JSON-RPC error -32602

USAGE:
    codesession mcp
    # MCP client configuration
    {"mcpServers": {"codesession": {"command": "codesession", "args": ["mcp"]}}}
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from .__version__ import __version__
from .config import Config
from .session_service import ServiceResult, SessionService

logger = logging.getLogger(__name__)

_DIRECTORY_PROP = {
    "type": "string",
    "description": "Working directory to resolve the session for (defaults to most recent)",
}
_SESSION_ID_PROP = {"type": "integer", "description": "Specific session id"}


class InvalidParamsError(ValueError):
    """Tool arguments are missing or have the wrong type."""


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or value == "":
        raise InvalidParamsError(f"Missing required argument: {key}")
    return value


def _optional(args: dict[str, Any], key: str, cast: type) -> Any:
    value = args.get(key)
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise InvalidParamsError(f"Invalid value for {key}: {value!r}") from e


class SessionTrackerServer:
    """
    MCP server for codesession.

    ARCHITECTURE:
    - Tool Registry: tool definitions with JSON schemas (tools/list)
    - Message Handler: routes JSON-RPC messages to tool executors
    - Tool Executors: one SessionService call each
    - Registry: sessions started here are observed in-process (file
      watching, commit polling) until they end or the server stops

    ERROR CODES (JSON-RPC 2.0):
    - -32601: Method or tool not found
    - -32602: Invalid params
    - -32603: Internal error
    - -32700: Parse error
    """

    def __init__(self, service: SessionService | None = None) -> None:
        """
        Initialize the MCP server with its service and tool registry.

        Args:
            service: SessionService to dispatch to. Default: one backed by
                the store under Config.data_dir(). Tests pass a service
                with a temporary store and fake git/watch capabilities.
        """
        self.service = service or SessionService()

        self._tool_handlers = {
            "session_status": self._handle_session_status,
            "start_session": self._handle_start_session,
            "end_session": self._handle_end_session,
            "log_ai_usage": self._handle_log_ai_usage,
            "add_note": self._handle_add_note,
            "get_stats": self._handle_get_stats,
            "list_sessions": self._handle_list_sessions,
            "check_budget": self._handle_check_budget,
            "recover_sessions": self._handle_recover_sessions,
            "get_pricing": self._handle_get_pricing,
        }

        self.tools = self._build_tool_definitions()

    def _build_tool_definitions(self) -> dict[str, dict[str, Any]]:
        """
        Build the tool registry returned by tools/list.

        Returns:
            Dict mapping tool names to {name, description, inputSchema}.
        """

        def tool(
            name: str,
            description: str,
            properties: dict[str, Any],
            required: list[str] | None = None,
        ) -> dict[str, Any]:
            schema: dict[str, Any] = {"type": "object", "properties": properties}
            if required:
                schema["required"] = required
            return {"name": name, "description": description, "inputSchema": schema}

        definitions = [
            tool(
                "session_status",
                "Get the active codesession status including cost, tokens, duration and branch",
                {"directory": _DIRECTORY_PROP, "session_id": _SESSION_ID_PROP},
            ),
            tool(
                "start_session",
                "Start a new codesession to track AI costs, files and commits. "
                "Fails if a session is already active for the directory unless resume is set.",
                {
                    "name": {
                        "type": "string",
                        "description": 'Session name (e.g. "fix auth bug")',
                    },
                    "directory": {"type": "string", "description": "Working directory"},
                    "resume": {
                        "type": "boolean",
                        "description": "Return the directory's active session instead of failing",
                        "default": False,
                    },
                    "close_stale": {
                        "type": "boolean",
                        "description": "End every active session before starting",
                        "default": False,
                    },
                    "track": {
                        "type": "boolean",
                        "description": "Watch files and poll commits while this server runs",
                        "default": True,
                    },
                },
                ["name"],
            ),
            tool(
                "end_session",
                "End the active codesession and get a full summary",
                {
                    "notes": {"type": "string", "description": "End-of-session notes"},
                    "directory": _DIRECTORY_PROP,
                    "session_id": _SESSION_ID_PROP,
                },
            ),
            tool(
                "log_ai_usage",
                "Log AI token usage and cost to the active session. Call this after each "
                "API call. Cost is calculated from the pricing table when omitted.",
                {
                    "provider": {"type": "string", "description": "anthropic, openai, google..."},
                    "model": {"type": "string", "description": "Model name (claude-sonnet-4...)"},
                    "prompt_tokens": {"type": "integer", "description": "Input tokens"},
                    "completion_tokens": {"type": "integer", "description": "Output tokens"},
                    "tokens": {"type": "integer", "description": "Total tokens (if no split)"},
                    "cost": {"type": "number", "description": "Cost in dollars"},
                    "budget": {
                        "type": "number",
                        "description": "Reject the call if it would push spend past this",
                    },
                    "agent_name": {"type": "string", "description": "Agent name for attribution"},
                    "directory": _DIRECTORY_PROP,
                    "session_id": _SESSION_ID_PROP,
                },
                ["provider", "model"],
            ),
            tool(
                "add_note",
                "Add a timestamped note to the active session",
                {
                    "message": {"type": "string", "description": "Note message"},
                    "directory": _DIRECTORY_PROP,
                    "session_id": _SESSION_ID_PROP,
                },
                ["message"],
            ),
            tool("get_stats", "Get overall codesession statistics across all sessions", {}),
            tool(
                "list_sessions",
                "List recent codesessions",
                {
                    "limit": {"type": "integer", "description": "Page size", "default": 10},
                    "offset": {"type": "integer", "default": 0},
                    "status": {"type": "string", "enum": sorted(Config.SESSION_STATUSES)},
                    "search": {"type": "string", "description": "Substring of the name"},
                },
            ),
            tool(
                "check_budget",
                "Check how much the active session has spent, useful before expensive calls",
                {
                    "budget": {"type": "number", "description": "Budget in dollars"},
                    "estimated_cost": {"type": "number", "description": "Cost of the next call"},
                    "directory": _DIRECTORY_PROP,
                    "session_id": _SESSION_ID_PROP,
                },
            ),
            tool(
                "recover_sessions",
                "End active sessions older than max_age_hours (left by crashed processes)",
                {
                    "max_age_hours": {
                        "type": "number",
                        "default": Config.DEFAULT_STALE_HOURS,
                    }
                },
            ),
            tool("get_pricing", "Current model pricing table (USD per 1M tokens)", {}),
        ]
        return {d["name"]: d for d in definitions}

    # =========================================================================
    # TOOL EXECUTORS
    # =========================================================================

    async def _handle_session_status(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.get_status(
            session_id=_optional(args, "session_id", int),
            directory=args.get("directory"),
        )

    async def _handle_start_session(self, args: dict[str, Any]) -> ServiceResult:
        """
        Start a session and, unless track is false, observe it in-process.

        The server is long-lived, so the session's file watcher and commit
        poller run here until the session ends or the server stops.
        """
        result = await self.service.start_session(
            str(_require(args, "name")),
            directory=args.get("directory"),
            resume=bool(args.get("resume", False)),
            close_stale=bool(args.get("close_stale", False)),
        )
        if result.success and result.data and args.get("track", True):
            data = result.data
            self.service.registry.register(
                data["id"],
                data["working_directory"],
                repo_path=data["git_root"] or data["working_directory"],
                start_head=data["start_git_head"],
            )
        return result

    async def _handle_end_session(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.end_session(
            session_id=_optional(args, "session_id", int),
            notes=args.get("notes"),
            directory=args.get("directory"),
        )

    async def _handle_log_ai_usage(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.log_ai_usage(
            str(_require(args, "provider")),
            str(_require(args, "model")),
            tokens=_optional(args, "tokens", int),
            cost=_optional(args, "cost", float),
            prompt_tokens=_optional(args, "prompt_tokens", int),
            completion_tokens=_optional(args, "completion_tokens", int),
            session_id=_optional(args, "session_id", int),
            directory=args.get("directory"),
            budget=_optional(args, "budget", float),
            agent_name=args.get("agent_name") or Config.DEFAULT_AGENT_NAME,
        )

    async def _handle_add_note(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.add_note(
            str(_require(args, "message")),
            session_id=_optional(args, "session_id", int),
            directory=args.get("directory"),
        )

    async def _handle_get_stats(self, args: dict[str, Any]) -> ServiceResult:
        result = await self.service.get_stats()
        if result.success and result.data is not None:
            active = await self.service.offload(self.service.store.get_active_sessions)
            result.data["active_sessions"] = len(active)
        return result

    async def _handle_list_sessions(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.list_sessions(
            limit=_optional(args, "limit", int) or 10,
            offset=_optional(args, "offset", int) or 0,
            status=args.get("status"),
            search=args.get("search"),
        )

    async def _handle_check_budget(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.check_budget(
            _optional(args, "budget", float),
            estimated_cost=_optional(args, "estimated_cost", float) or 0.0,
            session_id=_optional(args, "session_id", int),
            directory=args.get("directory"),
        )

    async def _handle_recover_sessions(self, args: dict[str, Any]) -> ServiceResult:
        max_age = _optional(args, "max_age_hours", float)
        return await self.service.recover_sessions(
            Config.DEFAULT_STALE_HOURS if max_age is None else max_age
        )

    async def _handle_get_pricing(self, args: dict[str, Any]) -> ServiceResult:
        return await self.service.get_pricing()

    # =========================================================================
    # RESPONSE HELPERS
    # =========================================================================

    def _tool_response(self, msg_id: Any, result: ServiceResult) -> dict[str, Any]:
        """
        Wrap a ServiceResult as an MCP tools/call result.

        Failed results are still JSON-RPC successes: the tool ran and the
        client needs the error code, so the payload carries isError.

        Example:
            >>> response = server._tool_response(1, ServiceResult(True, "ok", {"id": 3}))
            >>> json.loads(response["result"]["content"][0]["text"])["data"]["id"]
            3
        """
        payload: dict[str, Any] = {
            "content": [{"type": "text", "text": json.dumps(result.to_dict(), default=str)}],
        }
        if not result.success:
            payload["isError"] = True
        return {"jsonrpc": "2.0", "id": msg_id, "result": payload}

    def _error_response(self, msg_id: Any, code: int, message: str) -> dict[str, Any]:
        """
        Build a JSON-RPC 2.0 error response.

        Args:
            msg_id: Request id, echoed back unchanged.
            code: JSON-RPC error code (-32700, -32601, -32602, -32603).
            message: Human-readable error message.
        """
        return {
            "jsonrpc": "2.0",
            "id": msg_id,
            "error": {"code": code, "message": message},
        }

    # =========================================================================
    # MESSAGE HANDLING
    # =========================================================================

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """
        Route an incoming JSON-RPC message to its handler.

        Supported methods:
        - 'initialize': server capabilities and protocol version
        - 'tools/list': tool definitions with schemas
        - 'tools/call': run a tool
        - 'notifications/*': acknowledged silently (no response)

        Args:
            message: Parsed JSON-RPC message with 'method', 'id', 'params'.

        Returns:
            JSON-RPC response dict, or None for notifications.

        Example:
            >>> response = await server.handle_message({"method": "tools/list", "id": 1})
            >>> len(response["result"]["tools"])
            10
        """
        method = message.get("method", "")
        msg_id = message.get("id")

        if method.startswith("notifications/"):
            return None

        if method == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {
                    "protocolVersion": Config.MCP_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": Config.SERVER_NAME, "version": __version__},
                },
            }

        if method == "tools/list":
            return {
                "jsonrpc": "2.0",
                "id": msg_id,
                "result": {"tools": list(self.tools.values())},
            }

        if method == "tools/call":
            params = message.get("params") or {}
            tool_name = params.get("name", "")
            arguments = params.get("arguments") or {}

            handler = self._tool_handlers.get(tool_name)
            if handler is None:
                return self._error_response(msg_id, -32601, f"Unknown tool: {tool_name}")
            try:
                result = await handler(arguments)
            except InvalidParamsError as e:
                return self._error_response(msg_id, -32602, str(e))
            except Exception as e:
                logger.error(f"Error in tool {tool_name}: {e}")
                return self._error_response(msg_id, -32603, f"{tool_name} failed: {e}")
            return self._tool_response(msg_id, result)

        return self._error_response(msg_id, -32601, f"Unknown method: {method}")

    async def run(self) -> None:
        """
        Run the server in stdio mode until stdin reaches EOF.

        Protocol flow: read line, parse JSON, dispatch, write the response
        as one line to stdout. Sessions are NOT ended on shutdown (they
        belong to the user, not this process); only the in-process
        observers are released.
        """
        logger.info(f"Starting {Config.SERVER_NAME} MCP server v{__version__}")
        loop = asyncio.get_running_loop()

        try:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid JSON: {e}")
                    print(
                        json.dumps(
                            {
                                "jsonrpc": "2.0",
                                "id": None,
                                "error": {"code": -32700, "message": "Parse error"},
                            }
                        ),
                        flush=True,
                    )
                    continue

                response = await self.handle_message(message)
                if response is not None:
                    print(json.dumps(response, default=str), flush=True)
        finally:
            released = self.service.registry.unregister_all()
            if released:
                logger.info(f"Released {released} tracked session(s) on shutdown")
            logger.info("Server shutting down")


async def main() -> None:
    """
    Entry point for the MCP server (`codesession mcp`).

    Logging is configured to stderr here, since stdout carries the protocol.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    server = SessionTrackerServer()
    await server.run()


if __name__ == "__main__":
    asyncio.run(main())
