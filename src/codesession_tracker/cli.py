"""
CLI entry point for codesession.

PURPOSE: Command-line interface for session lifecycle, AI usage logging,
reporting, pricing management and the long-running surfaces (dashboard,
MCP server).
AI CONTEXT: Every command is a thin call into SessionService (or the store
and pricing table for exports and pricing). `--json` switches the output to
one JSON document for agents; failures then print {"error": code, ...}
and the exit code is non-zero.

USAGE:
    codesession start "fix auth bug" [--resume | --close-stale] [--watch]
    codesession log-ai -p anthropic -m claude-sonnet-4 --prompt-tokens 1200 --completion-tokens 300
    codesession note "switched to the new token cache"
    codesession end -n "done"
    codesession show --files --commits
    codesession list -l 20 | stats | status | recover --max-age 24
    codesession export -f csv > sessions.csv
    codesession pricing list | set my-model 1.0 4.0 | reset
    codesession dashboard --port 3737
    codesession mcp

`cs` is installed as a short alias of `codesession`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from .config import Config
from .errors import TrackerError
from .presenters import format_cost, format_duration, format_tokens
from .session_service import ServiceResult, SessionService
from .statistics import StatisticsEngine

PROG = "codesession"

ServiceFactory = Callable[[], SessionService]


@lru_cache(maxsize=1)
def _get_logger() -> logging.Logger:
    """Get module logger (cached for thread safety)."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return logging.getLogger(__name__)


def _log(message: str, *, emoji: str = "") -> None:
    """Log message with optional emoji prefix for CLI output.

    Args:
        message: The message to log.
        emoji: Optional emoji prefix for visual CLI feedback.
    """
    prefix = f"{emoji} " if emoji else ""
    _get_logger().info(f"{prefix}{message}")


# =============================================================================
# OUTPUT HELPERS
# =============================================================================


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, default=str))


def _error_payload(result: ServiceResult) -> dict[str, Any]:
    """
    The --json error document for a failed result.

    Example:
        >>> _error_payload(ServiceResult(False, "No active session", code="no_active_session"))
        {'error': 'no_active_session', 'message': 'No active session'}
    """
    payload: dict[str, Any] = {"error": result.code, "message": result.message}
    if result.data:
        payload.update(result.data)
    return payload


def _fail(result: ServiceResult, as_json: bool) -> int:
    if as_json:
        _print_json(_error_payload(result))
    else:
        print(f"\n⚠️  {result.message}")
        hint = (result.data or {}).get("hint")
        if hint:
            print(f"   {hint}")
        print()
    return 1


def _print_session(session: dict[str, Any]) -> None:
    """Key/value block for one session dict."""
    print(f"\nSession #{session['id']}: {session['name']}\n")
    duration = session.get("live_duration", session.get("duration"))
    rows = [
        ("Status", session["status"]),
        ("Started", session["start_time"]),
        ("Ended", session.get("end_time")),
        ("Duration", format_duration(duration) if duration is not None else "ongoing"),
        ("Directory", session["working_directory"]),
        ("Branch", session.get("branch")),
        ("Files Changed", session["files_changed"]),
        ("Commits", session["commits"]),
        ("AI Tokens", f"{session['ai_tokens']:,}"),
        ("AI Cost", format_cost(session["ai_cost"])),
        ("Notes", session.get("notes")),
    ]
    for label, value in rows:
        if value is not None:
            print(f"  {label:<14} {value}")
    print()


def _print_sessions_table(sessions: list[dict[str, Any]]) -> None:
    if not sessions:
        print("\nNo sessions found.\n")
        return
    print()
    print(f"  {'ID':>5}  {'Name':<30} {'Status':<10} {'Duration':>9} {'Files':>5} "
          f"{'Commits':>7} {'AI Cost':>10}")
    for s in sessions:
        duration = format_duration(s["duration"]) if s["duration"] is not None else "ongoing"
        print(
            f"  {'#' + str(s['id']):>5}  {s['name'][:30]:<30} {s['status']:<10} {duration:>9} "
            f"{s['files_changed']:>5} {s['commits']:>7} {format_cost(s['ai_cost']):>10}"
        )
    print()


# =============================================================================
# COMMANDS
# =============================================================================


def cmd_start(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(
        service.start_session(
            args.name,
            directory=os.getcwd(),
            resume=args.resume,
            close_stale=args.close_stale,
        )
    )
    if not result.success:
        return _fail(result, args.json)
    data = result.data or {}
    if args.json:
        _print_json(data)
    else:
        verb = "Resumed session" if data.get("resumed") else "Session started"
        print(f"\n✓ {verb}: {data['name']} (id: {data['id']})")
        closed = data.get("closed_sessions") or []
        if closed:
            print(f"  Closed {len(closed)} stale session(s)")
        if data.get("branch"):
            print(f"  Branch: {data['branch']}")
        print(f"  Directory: {data['working_directory']}")
        print("  End with: cs end\n")

    if args.watch:
        return _watch(service, data["id"], quiet=args.json)
    return 0


def _watch(service: SessionService, session_id: int, quiet: bool = False) -> int:
    """Observe files and commits in the foreground until the session ends or Ctrl+C."""
    if not quiet:
        print("  Tracking files and commits (Ctrl+C to stop tracking)...")
    try:
        final = asyncio.run(service.track(session_id))
    except KeyboardInterrupt:
        if not quiet:
            print("\n  Tracking stopped; the session is still active. End it with: cs end\n")
        return 0
    except TrackerError as e:
        print(f"\n⚠️  {e.message}\n")
        return 1
    if final is not None and not quiet:
        print(f"\n✓ Session {session_id} ended: {final.files_changed} file(s), "
              f"{final.commits} commit(s), {format_cost(final.ai_cost)}\n")
    return 0


def cmd_end(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(
        service.end_session(session_id=args.session, notes=args.notes, directory=os.getcwd())
    )
    if not result.success:
        return _fail(result, args.json)
    detail = result.data or {}
    if args.json:
        _print_json(detail)
        return 0
    print("\n✓ Session ended")
    _print_session(detail["session"])
    return 0


def cmd_show(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(service.show_session(args.id))
    if not result.success:
        return _fail(result, args.json)
    detail = result.data or {}
    if args.json:
        payload = dict(detail["session"])
        payload["ai_usage"] = detail["ai_usage"]
        payload["annotations"] = detail["notes"]
        if args.files:
            payload["files"] = detail["files"]
        if args.commits:
            payload["commits"] = detail["commits"]
        _print_json(payload)
        return 0

    _print_session(detail["session"])
    if args.files and detail["files"]:
        print("File Changes\n")
        for change in detail["files"]:
            print(f"  {change['change_type']:<9} {change['file_path']}  ({change['timestamp']})")
        print()
    if args.commits and detail["commits"]:
        print("Commits\n")
        for commit in detail["commits"]:
            print(f"  {commit['hash']}  {commit['message']}")
        print()
    return 0


def cmd_list(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(service.list_sessions(limit=args.limit))
    if not result.success:
        return _fail(result, args.json)
    sessions = (result.data or {}).get("sessions", [])
    if args.json:
        _print_json(sessions)
    else:
        _print_sessions_table(sessions)
    return 0


def cmd_stats(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(service.get_stats())
    if not result.success:
        return _fail(result, args.json)
    stats = result.data or {}
    if args.json:
        _print_json(
            {
                **stats,
                "total_time_formatted": format_duration(stats["total_time"]),
                "avg_session_formatted": format_duration(stats["avg_session_time"]),
            }
        )
        return 0

    # Note: Using print() intentionally for stdout piping support
    print(StatisticsEngine(service.store).generate_summary_report())
    return 0


def cmd_status(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(service.get_status(session_id=args.session, directory=os.getcwd()))
    if not result.success:
        return _fail(result, args.json)
    data = result.data or {}
    if args.json:
        _print_json(data)
        return 0
    _print_session(data)
    if data.get("has_changes"):
        print("  Uncommitted changes present\n")
    return 0


def cmd_log_ai(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(
        service.log_ai_usage(
            args.provider,
            args.model,
            tokens=args.tokens,
            cost=args.cost,
            prompt_tokens=args.prompt_tokens,
            completion_tokens=args.completion_tokens,
            session_id=args.session,
            directory=os.getcwd(),
            budget=args.budget,
            agent_name=args.agent_name,
        )
    )
    if not result.success:
        return _fail(result, args.json)
    receipt = result.data or {}
    if args.json:
        _print_json(receipt)
        return 0
    estimated = " (estimated)" if receipt.get("estimated") else ""
    print(f"\n✓ Logged {format_tokens(receipt['tokens'])} tokens, "
          f"{format_cost(receipt['cost'])}{estimated}")
    print(f"  Session total: {format_cost(receipt['total_cost'])}")
    if receipt.get("budget") is not None:
        print(f"  Budget remaining: {format_cost(receipt['budget_remaining'])}")
    if receipt.get("auto_ended"):
        print("  Budget reached: session ended")
    print()
    return 0


def cmd_note(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(
        service.add_note(args.message, session_id=args.session, directory=os.getcwd())
    )
    if not result.success:
        return _fail(result, args.json)
    if args.json:
        _print_json(result.data)
    else:
        print(f"\n✓ {result.message}\n")
    return 0


def cmd_recover(args: argparse.Namespace, service: SessionService) -> int:
    result = asyncio.run(service.recover_sessions(args.max_age))
    if not result.success:
        return _fail(result, args.json)
    data = result.data or {}
    if args.json:
        _print_json(data)
        return 0
    if not data["count"]:
        print(f"\nNo stale sessions older than {args.max_age:g}h.\n")
        return 0
    print(f"\n✓ Recovered {data['count']} stale session(s)")
    for session in data["recovered"]:
        print(f"  #{session['id']} {session['name']} (started {session['start_time']})")
    print()
    return 0


def cmd_export(args: argparse.Namespace, service: SessionService) -> int:
    try:
        output = service.store.export_sessions(args.format, args.limit)
    except TrackerError as e:
        print(f"\n⚠️  {e.message}\n", file=sys.stderr)
        return 1
    sys.stdout.write(output)
    if not output.endswith("\n"):
        sys.stdout.write("\n")
    return 0


def cmd_pricing(args: argparse.Namespace, service: SessionService) -> int:
    pricing = service.pricing
    if args.pricing_command == "set":
        try:
            pricing.set_price(args.model, args.input, args.output)
        except ValueError as e:
            print(f"\n⚠️  {e}\n", file=sys.stderr)
            return 1
        print(f"\n✓ {args.model}: ${args.input:g} input / ${args.output:g} output per 1M tokens\n")
        return 0
    if args.pricing_command == "reset":
        pricing.reset()
        print("\n✓ Pricing reset to defaults\n")
        return 0

    table = pricing.load()
    if args.json:
        _print_json(table)
        return 0
    print(f"\nModel pricing (per 1M tokens), overrides in {pricing.path}\n")
    print(f"  {'Model':<32} {'Input':>9} {'Output':>9}")
    for model in sorted(table):
        rates = table[model]
        print(f"  {model:<32} {'$' + format(rates['input'], 'g'):>9} "
              f"{'$' + format(rates['output'], 'g'):>9}")
    print()
    return 0


def cmd_dashboard(args: argparse.Namespace, service: SessionService) -> int:  # noqa: ARG001
    from .web import run_dashboard

    _log(f"Starting dashboard at http://{args.host}:{args.port}", emoji="🚀")
    _log("Press Ctrl+C to stop")
    run_dashboard(host=args.host, port=args.port)
    return 0


def cmd_mcp(args: argparse.Namespace, service: SessionService) -> int:  # noqa: ARG001
    from .server import main as server_main

    asyncio.run(server_main())
    return 0


# =============================================================================
# PARSER
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subparser per command."""
    from .__version__ import __version__

    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Track coding sessions: time, files, commits, AI tokens and cost",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def json_flag(p: argparse.ArgumentParser) -> None:
        p.add_argument("--json", action="store_true", help="Output JSON (for agents)")

    start = subparsers.add_parser("start", help="Start a new coding session")
    start.add_argument("name", help="Session name")
    start_mode = start.add_mutually_exclusive_group()
    start_mode.add_argument(
        "--resume",
        action="store_true",
        help="Reuse the active session for this directory instead of failing",
    )
    start_mode.add_argument(
        "--close-stale",
        action="store_true",
        help="End every active session before starting",
    )
    start.add_argument(
        "--watch",
        action="store_true",
        help="Stay in the foreground tracking file changes and commits",
    )
    json_flag(start)
    start.set_defaults(handler=cmd_start)

    end = subparsers.add_parser("end", help="End the active session")
    end.add_argument("-n", "--notes", help="Session notes")
    end.add_argument("-s", "--session", type=int, help="End a specific session by id")
    json_flag(end)
    end.set_defaults(handler=cmd_end)

    show = subparsers.add_parser("show", help="Show session details")
    show.add_argument("id", nargs="?", type=int, help="Session id (default: last session)")
    show.add_argument("--files", action="store_true", help="Show file changes")
    show.add_argument("--commits", action="store_true", help="Show commits")
    json_flag(show)
    show.set_defaults(handler=cmd_show)

    list_parser = subparsers.add_parser("list", aliases=["ls"], help="List recent sessions")
    list_parser.add_argument("-l", "--limit", type=int, default=10, help="Sessions to show")
    json_flag(list_parser)
    list_parser.set_defaults(handler=cmd_list)

    stats = subparsers.add_parser("stats", help="Show overall statistics")
    json_flag(stats)
    stats.set_defaults(handler=cmd_stats)

    status = subparsers.add_parser("status", help="Show the active session")
    status.add_argument("-s", "--session", type=int, help="Show a specific session by id")
    json_flag(status)
    status.set_defaults(handler=cmd_status)

    log_ai = subparsers.add_parser("log-ai", help="Log AI token usage and cost")
    log_ai.add_argument("-p", "--provider", required=True, help="anthropic, openai, google...")
    log_ai.add_argument("-m", "--model", required=True, help="Model name")
    log_ai.add_argument("-t", "--tokens", type=int, help="Total tokens")
    log_ai.add_argument("-c", "--cost", type=float, help="Cost in dollars (auto if omitted)")
    log_ai.add_argument("--prompt-tokens", type=int, help="Prompt/input tokens")
    log_ai.add_argument("--completion-tokens", type=int, help="Completion/output tokens")
    log_ai.add_argument("-s", "--session", type=int, help="Target a specific session by id")
    log_ai.add_argument("--budget", type=float, help="Reject if spend would exceed this")
    log_ai.add_argument("--agent-name", help="Agent name for attribution")
    json_flag(log_ai)
    log_ai.set_defaults(handler=cmd_log_ai)

    note = subparsers.add_parser("note", help="Add a timestamped note to the active session")
    note.add_argument("message", help="Note text")
    note.add_argument("-s", "--session", type=int, help="Target a specific session by id")
    json_flag(note)
    note.set_defaults(handler=cmd_note)

    recover = subparsers.add_parser("recover", help="Auto-end stale active sessions")
    recover.add_argument(
        "--max-age",
        type=float,
        default=Config.DEFAULT_STALE_HOURS,
        help=f"Hours before a session is stale (default: {Config.DEFAULT_STALE_HOURS:g})",
    )
    json_flag(recover)
    recover.set_defaults(handler=cmd_recover)

    export = subparsers.add_parser("export", help="Export sessions to stdout")
    export.add_argument("-f", "--format", choices=("json", "csv"), default="json")
    export.add_argument("-l", "--limit", type=int, help="Number of sessions (default: all)")
    export.set_defaults(handler=cmd_export)

    pricing = subparsers.add_parser("pricing", help="Show or change model pricing")
    pricing_sub = pricing.add_subparsers(dest="pricing_command")
    pricing_list = pricing_sub.add_parser("list", help="Show the pricing table")
    json_flag(pricing_list)
    pricing_set = pricing_sub.add_parser("set", help="Set a model's price per 1M tokens")
    pricing_set.add_argument("model")
    pricing_set.add_argument("input", type=float, help="USD per 1M input tokens")
    pricing_set.add_argument("output", type=float, help="USD per 1M output tokens")
    pricing_sub.add_parser("reset", help="Drop all overrides")
    pricing.set_defaults(handler=cmd_pricing, pricing_command="list", json=False)

    dashboard = subparsers.add_parser("dashboard", help="Launch the web dashboard")
    dashboard.add_argument(
        "--host", default=Config.DEFAULT_HOST, help=f"Bind address (default: {Config.DEFAULT_HOST})"
    )
    dashboard.add_argument(
        "--port", type=int, default=Config.DEFAULT_PORT, help=f"Port (default: {Config.DEFAULT_PORT})"
    )
    dashboard.set_defaults(handler=cmd_dashboard)

    mcp = subparsers.add_parser("mcp", help="Run the MCP server (stdio)")
    mcp.set_defaults(handler=cmd_mcp)

    return parser


def main(argv: list[str] | None = None, service_factory: ServiceFactory | None = None) -> int:
    """
    Main CLI entry point for codesession.

    Parses arguments and dispatches to the command handler. Every handler
    returns an exit code: 0 on success, 1 when the operation failed (the
    failure is printed, as JSON with --json).

    Args:
        argv: Arguments without the program name. Default: sys.argv[1:].
        service_factory: Builds the SessionService. Tests pass one backed
            by a temporary store.

    Returns:
        Process exit code.

    Example:
        >>> # From command line:
        >>> # codesession start "fix auth" --json
        >>> sys.exit(main())
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    service = (service_factory or SessionService)()
    try:
        return int(handler(args, service))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
