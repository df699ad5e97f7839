"""
FastAPI application for the codesession dashboard.

PURPOSE: Application factory, lifecycle hooks and the server runner.
AI CONTEXT: create_app() wires routes, error handlers and collaborators
(held on app.state); run_dashboard() is what `codesession dashboard` calls.

LIFECYCLE:
- startup: write dashboard-<port>.pid into the data directory
- shutdown: remove the PID file
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..__version__ import __version__
from ..config import Config
from ..errors import ErrorCode, TrackerError
from ..filesystem import FileSystem, RealFileSystem
from ..session_service import SessionService
from ..storage import AccountingStore
from .routes import api_router, router

__all__ = ["create_app", "run_dashboard", "PUBLIC_BIND_WARNING"]

logger = logging.getLogger(__name__)

PUBLIC_BIND_WARNING = (
    "WARNING: Binding to 0.0.0.0 exposes session data (costs, repo activity, file paths) "
    "to your entire network. Use only on trusted networks."
)


def _write_pid_file(filesystem: FileSystem, port: int) -> str | None:
    path = Config.pid_file_path(port)
    try:
        filesystem.makedirs(os.path.dirname(path), exist_ok=True)
        filesystem.write_text(path, str(os.getpid()))
    except OSError as e:
        logger.warning(f"Could not write PID file {path}: {e}")
        return None
    return path


def _remove_pid_file(filesystem: FileSystem, path: str) -> None:
    try:
        if filesystem.exists(path):
            filesystem.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove PID file {path}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """
    Write the PID file on startup and remove it on shutdown.

    No PID file is written when the app was created without a port
    (tests, embedding in another server).
    """
    logger.info(f"codesession dashboard starting (v{__version__})")
    port: int | None = app.state.port
    filesystem: FileSystem = app.state.filesystem
    pid_path = _write_pid_file(filesystem, port) if port is not None else None
    try:
        yield
    finally:
        if pid_path is not None:
            _remove_pid_file(filesystem, pid_path)
        logger.info("codesession dashboard shutting down")


async def _tracker_error_handler(request: Request, exc: Exception) -> JSONResponse:  # noqa: ARG001
    assert isinstance(exc, TrackerError)
    status = 404 if exc.code == ErrorCode.NOT_FOUND else 400
    return JSONResponse(status_code=status, content=exc.to_dict())


def create_app(
    store: AccountingStore | None = None,
    service: SessionService | None = None,
    api_token: str | None = None,
    port: int | None = None,
    filesystem: FileSystem | None = None,
) -> FastAPI:
    """
    Create and configure the dashboard application.

    Args:
        store: Store to read. Default: the service's store, or
            AccountingStore() at the configured data directory.
        service: SessionService for diff and pricing routes. Default:
            one built around the store.
        api_token: Bearer token for /api/*. Default: Config.api_token()
            (CODESESSION_TOKEN). None or empty leaves the API open.
        port: Port the server listens on; enables the PID file.
        filesystem: File I/O for the PID file. Default: RealFileSystem.

    Returns:
        FastAPI application with all routes registered.

    Example:
        >>> from fastapi.testclient import TestClient
        >>> client = TestClient(create_app(store=AccountingStore(db_path=tmp_path)))
        >>> client.get("/api/version").json()["version"]
        '1.4.0'
    """
    if service is None:
        service = SessionService(store=store)
    app = FastAPI(
        title="codesession",
        description="Dashboard for coding sessions, AI spend and repository activity",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.api_token = api_token if api_token is not None else Config.api_token()
    app.state.port = port
    app.state.filesystem = filesystem or RealFileSystem()

    app.add_exception_handler(TrackerError, _tracker_error_handler)
    app.include_router(router)
    app.include_router(api_router)
    return app


def run_dashboard(
    host: str = Config.DEFAULT_HOST,
    port: int = Config.DEFAULT_PORT,
    log_level: str = "info",
) -> None:
    """
    Launch the dashboard with uvicorn. Blocks until stopped (Ctrl+C).

    Args:
        host: Interface to bind. 127.0.0.1 (default) keeps the dashboard
            local; 0.0.0.0 logs a warning since session data becomes
            reachable from the network.
        port: TCP port. Default 3737.
        log_level: Uvicorn log level.

    Raises:
        OSError: If the port is already in use.
    """
    if host == "0.0.0.0":  # nosec B104
        logger.warning(PUBLIC_BIND_WARNING)
    uvicorn.run(create_app(port=port), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    run_dashboard()
