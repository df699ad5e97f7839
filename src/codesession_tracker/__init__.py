"""
codesession tracker.

PURPOSE: Record coding sessions (time, files touched, git commits, AI token
usage and cost) into a local SQLite store and expose them through a CLI,
an MCP stdio server and a local web dashboard.

PACKAGE STRUCTURE:
- storage.py: SQLite accounting store (atomic aggregate recomputation)
- registry.py: per-session tracking resources (watchers, pollers, timers)
- observers.py: file-change and commit observers
- ledger.py / pricing.py: cost estimation and budget enforcement
- session_service.py: session lifecycle (start/resume/close-stale/end/recover)
- agent_session.py: programmatic API for agent runs with a budget
- statistics.py: cross-session rollups
- server.py: MCP server, cli.py: command line, web/: dashboard

QUICK START:
    codesession start "fix auth bug" --watch
    codesession log-ai -p anthropic -m claude-sonnet-4 --prompt-tokens 1200 --completion-tokens 300
    codesession end -n "done"
"""

from codesession_tracker.__version__ import (
    __author__,
    __copyright__,
    __description__,
    __license__,
    __title__,
    __url__,
    __version__,
    __version_date__,
)

__all__ = [
    "__version__",
    "__version_date__",
    "__title__",
    "__description__",
    "__url__",
    "__author__",
    "__license__",
    "__copyright__",
]
