"""
FastAPI routes for the codesession dashboard.

PURPOSE: Thin route handlers that delegate to the store, the rollup engine,
the presenters and the session service.
AI CONTEXT: Routes hold no business logic. Collaborators come from
app.state through the dependency factories below, so tests inject a
temporary store with create_app(store=...).

ROUTE STRUCTURE:
- / : Overview page (full HTML, inline CSS)
- /charts/* : PNG charts (SVG placeholder without matplotlib)
- /api/* : JSON endpoints, bearer-token protected when a token is set

ERRORS:
- unknown session id -> 404 {"error": "session_not_found", "message": ...}
- missing or wrong bearer token -> 401
- invalid query parameters -> 422 (FastAPI validation)
"""

from __future__ import annotations

import html
import secrets
from collections.abc import Sequence
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from ..__version__ import __version__
from ..config import Config
from ..errors import ErrorCode, SessionNotFoundError
from ..presenters import (
    ChartPresenter,
    DashboardOverview,
    DashboardPresenter,
    SessionViewModel,
    format_cost,
    format_duration,
)
from ..session_service import ServiceResult, SessionService
from ..statistics import StatisticsEngine
from ..storage import AccountingStore

__all__ = [
    "router",
    "api_router",
    "get_service",
    "get_store",
    "get_statistics",
    "get_dashboard_presenter",
    "get_chart_presenter",
    "require_token",
]

_DASHBOARD_CSS = """
:root {
    --bg: #0f172a;
    --surface: #1e293b;
    --border: #334155;
    --text: #f1f5f9;
    --text-muted: #94a3b8;
    --primary: #3b82f6;
    --success: #22c55e;
}
* { box-sizing: border-box; margin: 0; padding: 0; }
body {
    font-family: system-ui, -apple-system, sans-serif;
    background: var(--bg);
    color: var(--text);
    line-height: 1.6;
    padding: 1rem;
}
.container { max-width: 1400px; margin: 0 auto; }
header {
    display: flex;
    justify-content: space-between;
    align-items: center;
    margin-bottom: 1.5rem;
    padding-bottom: 1rem;
    border-bottom: 1px solid var(--border);
}
h1 { font-size: 1.5rem; font-weight: 600; }
.grid {
    display: grid;
    grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
    gap: 1rem;
    margin-bottom: 1.5rem;
}
.panel {
    background: var(--surface);
    border: 1px solid var(--border);
    border-radius: 0.5rem;
    padding: 1rem;
    margin-bottom: 1rem;
}
.panel h2 {
    font-size: 1rem;
    font-weight: 500;
    color: var(--text-muted);
    margin-bottom: 0.75rem;
}
.metric { font-size: 2rem; font-weight: 700; }
.metric-label { font-size: 0.875rem; color: var(--text-muted); }
table { width: 100%; border-collapse: collapse; }
th, td {
    text-align: left;
    padding: 0.75rem;
    border-bottom: 1px solid var(--border);
}
th { color: var(--text-muted); font-weight: 500; font-size: 0.875rem; }
.status-badge {
    display: inline-block;
    padding: 0.25rem 0.5rem;
    border-radius: 9999px;
    font-size: 0.75rem;
    font-weight: 500;
}
.status-active { background: var(--primary); color: white; }
.status-completed { background: var(--success); color: white; }
.chart-container { display: flex; justify-content: center; padding: 1rem 0; }
.chart-container img { max-width: 100%; height: auto; border-radius: 0.25rem; }
pre { white-space: pre-wrap; font-size: 0.875rem; color: var(--text-muted); }
footer {
    margin-top: 2rem;
    padding-top: 1rem;
    border-top: 1px solid var(--border);
    color: var(--text-muted);
    font-size: 0.875rem;
    text-align: center;
}
"""

# =============================================================================
# Dependency Factory Functions
# =============================================================================


def get_service(request: Request) -> SessionService:
    """Session service held by the application (built in create_app)."""
    return request.app.state.service


def get_store(service: Annotated[SessionService, Depends(get_service)]) -> AccountingStore:
    return service.store


def get_statistics(store: Annotated[AccountingStore, Depends(get_store)]) -> StatisticsEngine:
    return StatisticsEngine(store)


def get_dashboard_presenter(
    store: Annotated[AccountingStore, Depends(get_store)],
    statistics: Annotated[StatisticsEngine, Depends(get_statistics)],
) -> DashboardPresenter:
    return DashboardPresenter(store, statistics)


def get_chart_presenter(
    statistics: Annotated[StatisticsEngine, Depends(get_statistics)],
) -> ChartPresenter:
    return ChartPresenter(statistics)


def require_token(request: Request) -> None:
    """
    Enforce the optional bearer token on /api/* routes.

    No token configured means the API is open. Otherwise the request must
    carry ``Authorization: Bearer <token>``; anything else is a 401.

    Raises:
        HTTPException: 401 on a missing or wrong token.
    """
    expected: str | None = request.app.state.api_token
    if not expected:
        return
    scheme, _, supplied = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(
        supplied.strip().encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter()
api_router = APIRouter(prefix="/api", dependencies=[Depends(require_token)])

StoreDep = Annotated[AccountingStore, Depends(get_store)]
StatsDep = Annotated[StatisticsEngine, Depends(get_statistics)]


def _failure_response(result: ServiceResult) -> JSONResponse:
    status = 404 if result.code == ErrorCode.NOT_FOUND.value else 400
    if result.code == ErrorCode.INTERNAL_ERROR.value:
        status = 500
    body: dict[str, Any] = {"error": result.code, "message": result.message}
    return JSONResponse(status_code=status, content=body)


# ============================================================================
# Full Page Routes
# ============================================================================


@router.get("/", response_class=HTMLResponse)
def dashboard_page(
    presenter: Annotated[DashboardPresenter, Depends(get_dashboard_presenter)],
) -> HTMLResponse:
    """
    Render the overview page.

    Headline cards (sessions, time, spend, tokens), the active sessions,
    recent sessions, the daily spend chart, model and project tables and
    the text report. The page reloads itself every 30 seconds.
    """
    overview = presenter.get_overview()
    return HTMLResponse(
        content=_render_dashboard_html(overview), media_type="text/html; charset=utf-8"
    )


# ============================================================================
# Chart Routes
# ============================================================================


@router.get("/charts/daily-costs.png")
def daily_costs_chart(
    presenter: Annotated[ChartPresenter, Depends(get_chart_presenter)],
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> Response:
    """
    Daily AI spend as a PNG bar chart.

    Returns:
        image/png, or an image/svg+xml placeholder when matplotlib is not
        importable.
    """
    try:
        png_bytes = presenter.render_daily_costs_chart(days)
        return Response(content=png_bytes, media_type="image/png")
    except ImportError:
        return Response(
            content=_placeholder_chart_svg("Daily Costs"), media_type="image/svg+xml"
        )


@router.get("/charts/models.png")
def models_chart(
    presenter: Annotated[ChartPresenter, Depends(get_chart_presenter)],
) -> Response:
    """Spend per model as a PNG bar chart (SVG placeholder without matplotlib)."""
    try:
        return Response(content=presenter.render_model_chart(), media_type="image/png")
    except ImportError:
        return Response(content=_placeholder_chart_svg("Models"), media_type="image/svg+xml")


# ============================================================================
# API Routes (JSON)
# ============================================================================


@api_router.get("/version")
def api_version() -> dict[str, str]:
    return {"version": __version__}


@api_router.get("/stats")
def api_stats(store: StoreDep) -> dict[str, Any]:
    """Completed-session totals plus the number of active sessions."""
    stats = store.get_stats().to_dict()
    stats["active_sessions"] = len(store.get_active_sessions())
    return stats


@api_router.get("/sessions")
def api_sessions(
    store: StoreDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    status: Annotated[str | None, Query(pattern="^(active|completed)$")] = None,
    search: str | None = None,
) -> dict[str, Any]:
    """
    One page of sessions, newest first.

    Example:
        GET /api/sessions?limit=20&status=completed&search=auth
        {"sessions": [...], "total": 42, "limit": 20, "offset": 0}
    """
    page = store.get_sessions_paginated(limit, offset, status, search or None)
    page["sessions"] = [s.to_dict() for s in page["sessions"]]
    return page


@api_router.get("/sessions/{session_id}")
def api_session_detail(session_id: int, store: StoreDep) -> dict[str, Any]:
    """Session with its files, commits, AI usage and notes."""
    detail = store.get_session_detail(session_id)
    if detail is None:
        raise SessionNotFoundError(session_id)
    return detail


@api_router.get("/sessions/{session_id}/diff", response_model=None)
async def api_session_diff(
    session_id: int,
    service: Annotated[SessionService, Depends(get_service)],
    path: str | None = None,
    commit: str | None = None,
) -> dict[str, Any] | JSONResponse:
    """Unified diff of the session's work, or of one of its commits."""
    result = await service.session_diff(session_id, path=path, commit=commit)
    if not result.success:
        return _failure_response(result)
    return result.data or {}


@api_router.get("/daily-costs")
def api_daily_costs(
    statistics: StatsDep, days: Annotated[int, Query(ge=1, le=365)] = 30
) -> list[dict[str, Any]]:
    return statistics.daily_costs(days)


@api_router.get("/daily-tokens")
def api_daily_tokens(
    statistics: StatsDep, days: Annotated[int, Query(ge=1, le=365)] = 30
) -> list[dict[str, Any]]:
    return statistics.daily_tokens(days)


@api_router.get("/model-breakdown")
def api_model_breakdown(statistics: StatsDep) -> list[dict[str, Any]]:
    return statistics.model_breakdown()


@api_router.get("/provider-breakdown")
def api_provider_breakdown(statistics: StatsDep) -> list[dict[str, Any]]:
    return statistics.provider_breakdown()


@api_router.get("/top-sessions")
def api_top_sessions(
    statistics: StatsDep, limit: Annotated[int, Query(ge=1, le=100)] = 10
) -> list[dict[str, Any]]:
    return statistics.top_sessions(limit)


@api_router.get("/file-hotspots")
def api_file_hotspots(
    statistics: StatsDep, limit: Annotated[int, Query(ge=1, le=500)] = 50
) -> list[dict[str, Any]]:
    return statistics.file_hotspots(limit)


@api_router.get("/activity-heatmap")
def api_activity_heatmap(statistics: StatsDep) -> list[dict[str, Any]]:
    return statistics.activity_heatmap()


@api_router.get("/cost-velocity")
def api_cost_velocity(
    statistics: StatsDep, limit: Annotated[int, Query(ge=1, le=500)] = 50
) -> list[dict[str, Any]]:
    return statistics.cost_velocity(limit)


@api_router.get("/projects")
def api_projects(statistics: StatsDep) -> list[dict[str, Any]]:
    return statistics.project_breakdown()


@api_router.get("/token-ratios")
def api_token_ratios(statistics: StatsDep) -> list[dict[str, Any]]:
    return statistics.token_ratios()


@api_router.get("/report")
def api_report(statistics: StatsDep) -> dict[str, str]:
    """The `cs stats` text report wrapped in JSON."""
    return {"report": statistics.generate_summary_report()}


@api_router.get("/pricing")
def api_pricing(service: Annotated[SessionService, Depends(get_service)]) -> dict[str, Any]:
    """Merged pricing table (USD per 1M tokens) and the override file path."""
    return {"pricing": service.pricing.load(), "path": service.pricing.path}


@api_router.get("/export")
def api_export(
    store: StoreDep,
    format: Annotated[str, Query(pattern="^(json|csv)$")] = "json",  # noqa: A002
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> Response:
    """
    Download sessions as JSON (with events) or CSV.

    The response is an attachment named codesession-export.<format>.
    """
    body = store.export_sessions(format, limit)
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="codesession-export.{format}"'},
    )


# ============================================================================
# Template Rendering Helpers
# ============================================================================


def _placeholder_chart_svg(title: str) -> bytes:
    """
    Generate a placeholder SVG when matplotlib is unavailable.

    Example:
        >>> b"Daily Costs Chart" in _placeholder_chart_svg("Daily Costs")
        True
    """
    svg = f"""<svg xmlns="http://www.w3.org/2000/svg" width="400" height="200">
        <rect width="100%" height="100%" fill="#f1f5f9"/>
        <text x="50%" y="50%" text-anchor="middle" fill="#64748b" font-size="16">
            {html.escape(title)} Chart (install matplotlib)
        </text>
    </svg>"""
    return svg.encode("utf-8")


def _metric_card(label: str, value: str) -> str:
    return (
        f'<div class="panel"><div class="metric">{html.escape(value)}</div>'
        f'<div class="metric-label">{html.escape(label)}</div></div>'
    )


def _render_sessions_table(sessions: Sequence[SessionViewModel], empty: str) -> str:
    """Render session rows as an HTML table; names and paths are escaped."""
    rows = ""
    for s in sessions:
        rows += f"""<tr>
            <td>{s.id}</td>
            <td>{html.escape(s.name)}</td>
            <td>{html.escape(s.project)}</td>
            <td>{s.start_time_display}</td>
            <td><span class="status-badge {s.status_class}">{s.status}</span></td>
            <td>{s.duration_display}</td>
            <td>{s.files_changed}</td>
            <td>{s.commits}</td>
            <td>{s.cost_display}</td>
        </tr>"""

    if not rows:
        rows = (
            '<tr><td colspan="9" style="text-align: center; '
            f'color: var(--text-muted);">{html.escape(empty)}</td></tr>'
        )

    return f"""<table>
        <thead>
            <tr>
                <th>ID</th><th>Name</th><th>Project</th><th>Started</th><th>Status</th>
                <th>Duration</th><th>Files</th><th>Commits</th><th>AI Cost</th>
            </tr>
        </thead>
        <tbody>
            {rows}
        </tbody>
    </table>"""


def _render_rows(rows: Sequence[dict[str, Any]], columns: Sequence[tuple[str, str]]) -> str:
    """Render dict rows as a table, columns given as (key, header)."""
    head = "".join(f"<th>{html.escape(header)}</th>" for _, header in columns)
    body = ""
    for row in rows:
        cells = ""
        for key, _ in columns:
            value = row.get(key)
            if key in ("total_cost", "cost"):
                text = format_cost(value)
            elif key == "total_time":
                text = format_duration(value)
            else:
                text = "" if value is None else str(value)
            cells += f"<td>{html.escape(text)}</td>"
        body += f"<tr>{cells}</tr>"
    if not body:
        body = (
            f'<tr><td colspan="{len(columns)}" style="text-align: center; '
            'color: var(--text-muted);">Nothing recorded yet</td></tr>'
        )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _render_dashboard_html(overview: DashboardOverview) -> str:
    """
    Render the complete overview page.

    Args:
        overview: DashboardOverview from DashboardPresenter.get_overview().

    Returns:
        Full HTML document with inline CSS.
    """
    stats = overview.stats
    cards = "".join(
        [
            _metric_card("Completed sessions", str(stats.total_sessions)),
            _metric_card("Active now", str(stats.active_sessions)),
            _metric_card("Time tracked", stats.total_time_display),
            _metric_card("AI spend", stats.cost_display),
            _metric_card("Tokens", stats.tokens_display),
            _metric_card("Avg session", stats.avg_session_display),
        ]
    )
    models_html = _render_rows(
        overview.models,
        [("model", "Model"), ("provider", "Provider"), ("calls", "Calls"),
         ("total_tokens", "Tokens"), ("total_cost", "Cost")],
    )
    projects_html = _render_rows(
        overview.projects,
        [("name", "Project"), ("sessions", "Sessions"), ("total_time", "Time"),
         ("total_commits", "Commits"), ("total_cost", "Cost")],
    )
    hotspots_html = _render_rows(
        overview.hotspots,
        [("file_path", "File"), ("change_count", "Changes"), ("session_count", "Sessions")],
    )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta http-equiv="refresh" content="30">
    <title>codesession - Dashboard</title>
    <style>
        {_DASHBOARD_CSS}
    </style>
</head>
<body>
    <div class="container">
        <header>
            <h1>⏱️ codesession</h1>
            <span class="metric-label">v{__version__} &bull; auto-refresh 30s</span>
        </header>

        <div class="grid">{cards}</div>

        <div class="panel">
            <h2>🟢 Active sessions</h2>
            {_render_sessions_table(overview.active, "No active sessions")}
        </div>

        <div class="panel">
            <h2>📈 AI spend, last 30 days</h2>
            <div class="chart-container">
                <img src="/charts/daily-costs.png" alt="Daily costs chart">
            </div>
        </div>

        <div class="panel">
            <h2>📋 Recent sessions</h2>
            {_render_sessions_table(overview.sessions, "No sessions yet")}
        </div>

        <div class="grid">
            <div class="panel"><h2>🤖 Models</h2>{models_html}</div>
            <div class="panel"><h2>📁 Projects</h2>{projects_html}</div>
        </div>

        <div class="panel"><h2>🔥 File hotspots</h2>{hotspots_html}</div>

        <div class="panel"><h2>📝 Report</h2><pre>{html.escape(overview.report_text)}</pre></div>

        <footer>
            codesession &bull; data in {html.escape(Config.data_dir())}
        </footer>
    </div>
</body>
</html>"""
