"""
Presenters for codesession output surfaces.

PURPOSE: Testable formatting layer between the store/rollups and the CLI,
the dashboard page and the chart endpoints.
AI CONTEXT: View models are plain dataclasses with display properties.
Presenters read through AccountingStore and StatisticsEngine and never
write. ChartPresenter renders PNGs with matplotlib (Agg backend).

DESIGN PRINCIPLES:
1. Presenters receive collaborators, return view models
2. No dependency on a specific UI framework
3. Formatting helpers are pure functions shared by CLI and web

USAGE:
    presenter = DashboardPresenter(store, StatisticsEngine(store))
    overview = presenter.get_overview()
    png = ChartPresenter(StatisticsEngine(store)).render_daily_costs_chart()
"""

from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .models import Session, parse_iso

if TYPE_CHECKING:
    from .statistics import StatisticsEngine
    from .storage import AccountingStore

__all__ = [
    "format_duration",
    "format_cost",
    "format_tokens",
    "SessionViewModel",
    "StatsViewModel",
    "DashboardOverview",
    "DashboardPresenter",
    "ChartPresenter",
]

CHART_COLOR = "#3b82f6"


def format_duration(seconds: float | None) -> str:
    """
    Format a duration in seconds as a compact string.

    Example:
        >>> format_duration(45)
        '45s'
        >>> format_duration(3900)
        '1h 5m'
    """
    if not seconds or seconds < 0:
        return "0s"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, _ = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def format_cost(cost: float | None) -> str:
    """
    Format a dollar amount.

    Amounts under one cent keep four decimals so single cheap calls are
    still visible.

    Example:
        >>> format_cost(0.0042)
        '$0.0042'
        >>> format_cost(12.5)
        '$12.50'
    """
    cost = cost or 0.0
    if 0 < cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:,.2f}"


def format_tokens(tokens: int | None) -> str:
    """Format a token count as 950, 12.3K or 1.2M."""
    tokens = tokens or 0
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


@dataclass
class SessionViewModel:
    """View model for a single session row."""

    id: int
    name: str
    status: str
    start_time: str
    duration: int
    files_changed: int
    commits: int
    ai_cost: float
    ai_tokens: int
    project: str

    @classmethod
    def from_session(cls, session: Session) -> SessionViewModel:
        """
        Build a row from a stored session.

        Active sessions show their live elapsed time rather than the
        stored (empty) duration.
        """
        scope = session.git_root or session.working_directory
        return cls(
            id=session.id,
            name=session.name,
            status=session.status,
            start_time=session.start_time,
            duration=session.live_duration(),
            files_changed=session.files_changed,
            commits=session.commits,
            ai_cost=session.ai_cost,
            ai_tokens=session.ai_tokens,
            project=os.path.basename(scope.rstrip("/\\")) or scope,
        )

    @property
    def duration_display(self) -> str:
        return format_duration(self.duration)

    @property
    def cost_display(self) -> str:
        return format_cost(self.ai_cost)

    @property
    def tokens_display(self) -> str:
        return format_tokens(self.ai_tokens)

    @property
    def status_class(self) -> str:
        """
        CSS class name for the status badge.

        Example:
            >>> row.status_class
            'status-completed'
        """
        return {
            "active": "status-active",
            "completed": "status-completed",
        }.get(self.status, "status-unknown")

    @property
    def start_time_display(self) -> str:
        """Start time as YYYY-MM-DD HH:MM (UTC), or a dash if unparseable."""
        try:
            return parse_iso(self.start_time).strftime("%Y-%m-%d %H:%M")
        except (ValueError, TypeError):
            return "—"


@dataclass
class StatsViewModel:
    """Headline numbers for the overview cards."""

    total_sessions: int = 0
    active_sessions: int = 0
    total_time: int = 0
    avg_session_time: float = 0.0
    total_files: int = 0
    total_commits: int = 0
    total_ai_cost: float = 0.0
    total_ai_tokens: int = 0

    @property
    def total_time_display(self) -> str:
        return format_duration(self.total_time)

    @property
    def avg_session_display(self) -> str:
        return format_duration(self.avg_session_time)

    @property
    def cost_display(self) -> str:
        return format_cost(self.total_ai_cost)

    @property
    def tokens_display(self) -> str:
        return format_tokens(self.total_ai_tokens)


@dataclass
class DashboardOverview:
    """Complete view model for the dashboard overview page."""

    stats: StatsViewModel = field(default_factory=StatsViewModel)
    active: list[SessionViewModel] = field(default_factory=list)
    sessions: list[SessionViewModel] = field(default_factory=list)
    models: list[dict[str, Any]] = field(default_factory=list)
    projects: list[dict[str, Any]] = field(default_factory=list)
    hotspots: list[dict[str, Any]] = field(default_factory=list)
    report_text: str = ""


class DashboardPresenter:
    """
    Presenter for the dashboard overview.

    Args:
        store: Store for session reads.
        statistics: Rollup engine over the same store.
    """

    def __init__(self, store: AccountingStore, statistics: StatisticsEngine) -> None:
        self.store = store
        self.statistics = statistics

    def get_stats(self) -> StatsViewModel:
        """Completed-session totals plus the live count of active sessions."""
        stats = self.store.get_stats()
        return StatsViewModel(
            total_sessions=stats.total_sessions,
            active_sessions=len(self.store.get_active_sessions()),
            total_time=stats.total_time,
            avg_session_time=stats.avg_session_time,
            total_files=stats.total_files,
            total_commits=stats.total_commits,
            total_ai_cost=stats.total_ai_cost,
            total_ai_tokens=stats.total_ai_tokens,
        )

    def get_sessions_list(self, limit: int = 20) -> list[SessionViewModel]:
        """Most recent sessions, newest first."""
        return [SessionViewModel.from_session(s) for s in self.store.get_sessions(limit)]

    def get_overview(self, limit: int = 20) -> DashboardOverview:
        """
        Get complete overview data for the dashboard page.

        Aggregates the headline stats, active sessions, recent sessions,
        model and project breakdowns, file hotspots and the text report in
        one pass so the page renders from a single request.

        Args:
            limit: Number of recent sessions to include.

        Returns:
            DashboardOverview with every panel populated (empty lists and
            zero values when nothing has been recorded).

        Example:
            >>> overview = presenter.get_overview()
            >>> overview.stats.cost_display
            '$3.21'
        """
        return DashboardOverview(
            stats=self.get_stats(),
            active=[SessionViewModel.from_session(s) for s in self.store.get_active_sessions()],
            sessions=self.get_sessions_list(limit),
            models=self.statistics.model_breakdown(),
            projects=self.statistics.project_breakdown(),
            hotspots=self.statistics.file_hotspots(limit=10),
            report_text=self.statistics.generate_summary_report(),
        )


class ChartPresenter:
    """
    Server-side chart rendering with matplotlib.

    Returns PNG images as bytes. matplotlib is imported lazily; callers
    catch ImportError and serve a placeholder instead.
    """

    def __init__(self, statistics: StatisticsEngine) -> None:
        self.statistics = statistics

    @staticmethod
    def _pyplot() -> Any:
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        return plt

    @staticmethod
    def _to_png(plt: Any, fig: Any) -> bytes:
        buf = io.BytesIO()
        plt.tight_layout()
        plt.savefig(buf, format="png", dpi=100, bbox_inches="tight")
        plt.close(fig)
        buf.seek(0)
        return buf.read()

    def render_daily_costs_chart(self, days: int = 30) -> bytes:
        """
        Render daily AI spend as a bar chart PNG.

        Returns:
            PNG image as bytes (800x300 at 100 DPI). A placeholder message
            is drawn when there is no spend in the window.

        Raises:
            ImportError: If matplotlib is not installed.
        """
        plt = self._pyplot()
        series = self.statistics.daily_costs(days)

        fig, ax = plt.subplots(figsize=(8, 3))
        if not any(point["cost"] for point in series):
            ax.text(0.5, 0.5, "No AI spend yet", ha="center", va="center", fontsize=14)
            ax.set_xlim(0, 1)
            ax.set_ylim(0, 1)
            ax.axis("off")
        else:
            ax.bar(range(len(series)), [p["cost"] for p in series], color=CHART_COLOR)
            ax.set_ylabel("Cost ($)")
            ax.set_title(f"AI spend, last {days} days")
            step = max(1, len(series) // 10)
            ticks = list(range(0, len(series), step))
            ax.set_xticks(ticks)
            ax.set_xticklabels([series[i]["day"][5:] for i in ticks], rotation=45, ha="right")
            ax.spines["top"].set_visible(False)
            ax.spines["right"].set_visible(False)
        return self._to_png(plt, fig)

    def render_model_chart(self, limit: int = 8) -> bytes:
        """
        Render spend per model as a horizontal bar chart PNG.

        Raises:
            ImportError: If matplotlib is not installed.
        """
        plt = self._pyplot()
        rows = self.statistics.model_breakdown()[:limit]

        fig, ax = plt.subplots(figsize=(6, 3))
        if not rows:
            ax.text(0.5, 0.5, "No AI usage yet", ha="center", va="center", fontsize=14)
            ax.axis("off")
        else:
            rows = list(reversed(rows))
            ax.barh([r["model"] for r in rows], [r["total_cost"] for r in rows], color=CHART_COLOR)
            ax.set_xlabel("Cost ($)")
            ax.set_title("Spend by model")
            ax.spines["top"].set_visible(False)
            ax.spines["right"].set_visible(False)
        return self._to_png(plt, fig)
