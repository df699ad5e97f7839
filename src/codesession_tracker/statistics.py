"""
Statistics engine for cross-session rollups.

PURPOSE: Aggregate the accounting store into the series and breakdowns shown
by the dashboard, `cs stats` and the MCP get_stats tool.
AI CONTEXT: Read-only. Every rollup is one SQL query against the store (or a
small Python pass over its rows) and returns plain dicts ready for JSON.

ROLLUPS:
- daily_costs / daily_tokens: per-day series over the last N days
- model_breakdown / provider_breakdown: spend grouped by model or provider
- token_ratios: prompt:completion ratio by model
- top_sessions / cost_velocity: most expensive sessions and cost per hour
- file_hotspots: most frequently changed files
- activity_heatmap: session starts by weekday and hour (UTC)
- project_breakdown: sessions grouped by repository root or directory
- generate_summary_report: text report for terminal display

Costs are rounded with round_cost so sums of many tiny calls stay stable.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

from .models import parse_iso, round_cost
from .storage import AccountingStore

__all__ = ["StatisticsEngine", "WEEKDAY_NAMES"]

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class StatisticsEngine:
    """
    Rollups over the accounting store.

    Args:
        store: Store to aggregate. Default: AccountingStore() at the
            configured data directory.

    Example:
        >>> engine = StatisticsEngine(store)
        >>> engine.daily_costs(days=7)[-1]
        {'day': '2026-10-18', 'cost': 0.42, 'sessions': 2, 'tokens': 18000}
    """

    def __init__(self, store: AccountingStore | None = None) -> None:
        self.store = store or AccountingStore()

    @staticmethod
    def _day_window(days: int, now: datetime | None = None) -> list[str]:
        today = (now or datetime.now(UTC)).date()
        return [(today - timedelta(days=offset)).isoformat() for offset in range(days - 1, -1, -1)]

    # =========================================================================
    # TIME SERIES
    # =========================================================================

    def daily_costs(self, days: int = 30, now: datetime | None = None) -> list[dict[str, Any]]:
        """
        AI spend per day for the last `days` days, oldest first.

        Days without usage are present with zero values so charts have a
        continuous axis.

        Returns:
            List of {day, cost, sessions, tokens}; sessions counts distinct
            sessions with usage that day.
        """
        if days <= 0:
            return []
        window = self._day_window(days, now)
        rows = self.store.fetch_all(
            """
            SELECT substr(timestamp, 1, 10) AS day,
                   SUM(cost) AS cost,
                   COUNT(DISTINCT session_id) AS sessions,
                   SUM(tokens) AS tokens
            FROM ai_usage
            WHERE substr(timestamp, 1, 10) >= ?
            GROUP BY day
            """,
            (window[0],),
        )
        by_day = {row["day"]: row for row in rows}
        series = []
        for day in window:
            row = by_day.get(day)
            series.append(
                {
                    "day": day,
                    "cost": round_cost(row["cost"]) if row else 0.0,
                    "sessions": row["sessions"] if row else 0,
                    "tokens": (row["tokens"] or 0) if row else 0,
                }
            )
        return series

    def daily_tokens(self, days: int = 30, now: datetime | None = None) -> list[dict[str, Any]]:
        """Token volume per day: {day, prompt_tokens, completion_tokens, total_tokens}."""
        if days <= 0:
            return []
        window = self._day_window(days, now)
        rows = self.store.fetch_all(
            """
            SELECT substr(timestamp, 1, 10) AS day,
                   SUM(COALESCE(prompt_tokens, 0)) AS prompt_tokens,
                   SUM(COALESCE(completion_tokens, 0)) AS completion_tokens,
                   SUM(tokens) AS total_tokens
            FROM ai_usage
            WHERE substr(timestamp, 1, 10) >= ?
            GROUP BY day
            """,
            (window[0],),
        )
        by_day = {row["day"]: row for row in rows}
        return [
            {
                "day": day,
                "prompt_tokens": by_day[day]["prompt_tokens"] if day in by_day else 0,
                "completion_tokens": by_day[day]["completion_tokens"] if day in by_day else 0,
                "total_tokens": by_day[day]["total_tokens"] if day in by_day else 0,
            }
            for day in window
        ]

    # =========================================================================
    # SPEND BREAKDOWNS
    # =========================================================================

    def model_breakdown(self) -> list[dict[str, Any]]:
        """Spend and tokens per (model, provider), most expensive first."""
        rows = self.store.fetch_all(
            """
            SELECT model, provider,
                   SUM(tokens) AS total_tokens,
                   SUM(cost) AS total_cost,
                   COUNT(*) AS calls,
                   SUM(COALESCE(prompt_tokens, 0)) AS prompt_tokens,
                   SUM(COALESCE(completion_tokens, 0)) AS completion_tokens
            FROM ai_usage
            GROUP BY model, provider
            ORDER BY total_cost DESC, model
            """
        )
        return [
            {
                "model": row["model"],
                "provider": row["provider"],
                "total_tokens": row["total_tokens"],
                "total_cost": round_cost(row["total_cost"]),
                "calls": row["calls"],
                "prompt_tokens": row["prompt_tokens"],
                "completion_tokens": row["completion_tokens"],
            }
            for row in rows
        ]

    def provider_breakdown(self) -> list[dict[str, Any]]:
        """Spend per provider with the number of distinct models used."""
        rows = self.store.fetch_all(
            """
            SELECT provider,
                   SUM(cost) AS total_cost,
                   SUM(tokens) AS total_tokens,
                   COUNT(*) AS calls,
                   COUNT(DISTINCT model) AS models
            FROM ai_usage
            GROUP BY provider
            ORDER BY total_cost DESC, provider
            """
        )
        return [
            {
                "provider": row["provider"],
                "total_cost": round_cost(row["total_cost"]),
                "total_tokens": row["total_tokens"],
                "calls": row["calls"],
                "models": row["models"],
            }
            for row in rows
        ]

    def token_ratios(self) -> list[dict[str, Any]]:
        """
        Prompt:completion ratio per model.

        Only calls that recorded both sides of the split are counted; calls
        logged with a bare total carry no split and would skew the ratio.
        `ratio` is None when no completion tokens were recorded.
        """
        rows = self.store.fetch_all(
            """
            SELECT model, provider,
                   SUM(prompt_tokens) AS prompt_tokens,
                   SUM(completion_tokens) AS completion_tokens,
                   COUNT(*) AS calls
            FROM ai_usage
            WHERE prompt_tokens IS NOT NULL AND completion_tokens IS NOT NULL
            GROUP BY model, provider
            ORDER BY calls DESC, model
            """
        )
        result = []
        for row in rows:
            completion = row["completion_tokens"]
            result.append(
                {
                    "model": row["model"],
                    "provider": row["provider"],
                    "prompt_tokens": row["prompt_tokens"],
                    "completion_tokens": completion,
                    "ratio": round(row["prompt_tokens"] / completion, 2) if completion else None,
                    "calls": row["calls"],
                }
            )
        return result

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def top_sessions(self, limit: int = 10) -> list[dict[str, Any]]:
        """Sessions with the highest AI spend."""
        rows = self.store.fetch_all(
            """
            SELECT id, name, ai_cost, duration, start_time, status
            FROM sessions
            WHERE ai_cost > 0
            ORDER BY ai_cost DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [
            {
                "id": row["id"],
                "name": row["name"],
                "ai_cost": round_cost(row["ai_cost"]),
                "duration": row["duration"],
                "start_time": row["start_time"],
                "status": row["status"],
            }
            for row in rows
        ]

    def cost_velocity(self, limit: int = 50) -> list[dict[str, Any]]:
        """
        Cost per hour for recent completed sessions.

        Sessions with no duration or no spend are skipped; a zero-length
        session has no meaningful rate.
        """
        rows = self.store.fetch_all(
            """
            SELECT id, name, start_time, duration, ai_cost
            FROM sessions
            WHERE status = 'completed' AND duration > 0 AND ai_cost > 0
            ORDER BY start_time DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [
            {
                "id": row["id"],
                "name": row["name"],
                "start_time": row["start_time"],
                "duration": row["duration"],
                "ai_cost": round_cost(row["ai_cost"]),
                "cost_per_hour": round_cost(row["ai_cost"] * 3600 / row["duration"]),
            }
            for row in rows
        ]

    def file_hotspots(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most frequently changed files across all sessions."""
        rows = self.store.fetch_all(
            """
            SELECT file_path,
                   COUNT(DISTINCT session_id) AS session_count,
                   COUNT(*) AS change_count,
                   MAX(timestamp) AS last_changed,
                   SUM(change_type = 'created') AS creates,
                   SUM(change_type = 'modified') AS modifies,
                   SUM(change_type = 'deleted') AS deletes
            FROM file_changes
            GROUP BY file_path
            ORDER BY change_count DESC, session_count DESC, file_path
            LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in rows]

    def activity_heatmap(self) -> list[dict[str, Any]]:
        """
        Session starts by weekday (0=Monday) and hour of day, in UTC.

        Returns:
            Non-empty cells only: {day_of_week, hour, sessions, cost}.
        """
        cells: dict[tuple[int, int], dict[str, Any]] = {}
        for row in self.store.fetch_all("SELECT start_time, ai_cost FROM sessions"):
            try:
                started = parse_iso(row["start_time"]).astimezone(UTC)
            except ValueError:
                logger.debug(f"Skipping unparseable start time: {row['start_time']!r}")
                continue
            key = (started.weekday(), started.hour)
            cell = cells.setdefault(
                key, {"day_of_week": key[0], "hour": key[1], "sessions": 0, "cost": 0.0}
            )
            cell["sessions"] += 1
            cell["cost"] = round_cost(cell["cost"] + (row["ai_cost"] or 0.0))
        return [cells[key] for key in sorted(cells)]

    def project_breakdown(self) -> list[dict[str, Any]]:
        """
        Rollup per project.

        A project is the session's repository root, or its working directory
        when the session was started outside a repository.
        """
        rows = self.store.fetch_all(
            """
            SELECT COALESCE(git_root, working_directory) AS project,
                   COUNT(*) AS sessions,
                   SUM(ai_cost) AS total_cost,
                   SUM(ai_tokens) AS total_tokens,
                   SUM(COALESCE(duration, 0)) AS total_time,
                   SUM(files_changed) AS total_files,
                   SUM(commits) AS total_commits,
                   MAX(start_time) AS last_active
            FROM sessions
            GROUP BY project
            ORDER BY last_active DESC
            """
        )
        return [
            {
                "project": row["project"],
                "name": os.path.basename(row["project"].rstrip("/\\")) or row["project"],
                "sessions": row["sessions"],
                "total_cost": round_cost(row["total_cost"]),
                "total_tokens": row["total_tokens"],
                "total_time": row["total_time"],
                "total_files": row["total_files"],
                "total_commits": row["total_commits"],
                "last_active": row["last_active"],
            }
            for row in rows
        ]

    # =========================================================================
    # REPORTS
    # =========================================================================

    def generate_summary_report(self, days: int = 30) -> str:
        """
        Generate a text summary of sessions, spend and hotspots.

        Combines the completed-session stats with the model breakdown, the
        last `days` days of spend and the top changed files. Designed for
        terminal display (`cs stats`).

        Args:
            days: Window for the recent-spend section.

        Returns:
            Multi-line report with section headers and aligned metrics.

        Example:
            >>> print(engine.generate_summary_report())
            ==================================================
            CODESESSION - SUMMARY REPORT
            ...
        """
        stats = self.store.get_stats()
        models = self.model_breakdown()
        recent = self.daily_costs(days)
        hotspots = self.file_hotspots(limit=5)
        recent_cost = round_cost(sum(day["cost"] for day in recent))
        active_days = sum(1 for day in recent if day["cost"] > 0)

        lines = [
            "=" * 50,
            "CODESESSION - SUMMARY REPORT",
            "=" * 50,
            "",
            "📊 SESSIONS (completed)",
            f"  • Total sessions: {stats.total_sessions}",
            f"  • Total time: {stats.total_time / 3600:.1f} hours",
            f"  • Average session: {stats.avg_session_time / 60:.0f} min",
            f"  • Files changed: {stats.total_files}",
            f"  • Commits: {stats.total_commits}",
            "",
            "💰 AI SPEND",
            f"  • Total cost: ${stats.total_ai_cost:,.2f}",
            f"  • Total tokens: {stats.total_ai_tokens:,}",
            f"  • Last {days} days: ${recent_cost:,.2f} over {active_days} active day(s)",
        ]

        if models:
            lines.extend(["", "🤖 MODELS"])
            for row in models[:5]:
                lines.append(
                    f"  • {row['model']} ({row['provider']}): "
                    f"${row['total_cost']:,.2f}, {row['total_tokens']:,} tokens, {row['calls']} call(s)"
                )

        if hotspots:
            lines.extend(["", "🔥 FILE HOTSPOTS"])
            for row in hotspots:
                lines.append(
                    f"  • {row['file_path']}: {row['change_count']} change(s) "
                    f"in {row['session_count']} session(s)"
                )

        lines.extend(["", "=" * 50])
        return "\n".join(lines)
