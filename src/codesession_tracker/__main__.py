"""
Package entry point for python -m execution.

USAGE:
    python -m codesession_tracker start "task"   # Start a session
    python -m codesession_tracker dashboard      # Launch web dashboard
    python -m codesession_tracker mcp            # Run MCP server (stdio)
"""

import sys

from codesession_tracker.cli import main

if __name__ == "__main__":
    sys.exit(main())
