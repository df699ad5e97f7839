"""
Web dashboard for codesession.

PURPOSE: FastAPI app serving an overview page, PNG charts and a JSON API
over the accounting store.
AI CONTEXT: Served locally by `codesession dashboard` (uvicorn). The JSON
API is open on localhost unless CODESESSION_TOKEN is set.

USAGE:
    # Via CLI
    codesession dashboard --port 3737

    # Programmatically
    from codesession_tracker.web import create_app
    app = create_app()
"""

from .app import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
