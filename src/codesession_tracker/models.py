"""
Data models for codesession.

PURPOSE: Type-safe dataclasses representing the persisted domain records.
AI CONTEXT: These models mirror the SQLite tables one-to-one. The store
returns them, services and presenters consume them.

MODEL HIERARCHY:
- Session: One tracked unit of work (has many of each event type below)
- FileChange: A file created/modified/deleted while the session ran
- Commit: A git commit observed while the session ran
- AIUsage: One AI call with tokens and cost
- SessionNote: A timestamped annotation
- SessionStats: Rollup over completed sessions

SERIALIZATION:
from_row() builds a model from a sqlite3.Row (or any mapping); to_dict()
produces the JSON shape used by CLI --json, MCP and web responses.
Timestamps use ISO 8601 format with UTC timezone.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from .config import Config


def now_iso() -> str:
    """
    Get current UTC time as ISO 8601 formatted string.

    Returns:
        ISO 8601 formatted datetime string, e.g. '2026-01-05T10:30:00.123456+00:00'.
    """
    return datetime.now(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts both '+00:00' offsets and the trailing 'Z' written by older
    releases; naive values are assumed to be UTC.

    Args:
        value: Timestamp string.

    Returns:
        Timezone-aware datetime.

    Raises:
        ValueError: If the string is not a valid ISO 8601 timestamp.

    Example:
        >>> parse_iso("2026-01-05T10:30:00Z").tzinfo is not None
        True
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def round_cost(value: float | None) -> float:
    """
    Round a cost to the fixed accounting scale.

    Applied both when the recomputed session total is stored and whenever a
    cost is read back, so float noise from SUM() never leaks to callers.

    Args:
        value: Raw cost (None treated as zero).

    Returns:
        Cost rounded to Config.COST_DECIMALS decimal places.

    Example:
        >>> round_cost(0.1 + 0.2)
        0.3
    """
    return round(float(value or 0.0), Config.COST_DECIMALS)


def clamp_duration(start_time: str, end_time: str) -> int:
    """
    Compute a session duration in whole seconds, clamped to [0, 1 year].

    Negative values (clock skew) collapse to 0 and absurd values
    (corrupted timestamps) are capped at Config.MAX_DURATION_SECONDS.

    Args:
        start_time: ISO start timestamp.
        end_time: ISO end timestamp.

    Returns:
        Duration in seconds. 0 if either timestamp cannot be parsed.

    Example:
        >>> clamp_duration("2026-01-01T10:00:00+00:00", "2026-01-01T09:00:00+00:00")
        0
    """
    try:
        seconds = int((parse_iso(end_time) - parse_iso(start_time)).total_seconds())
    except (ValueError, TypeError):
        return 0
    return max(0, min(seconds, Config.MAX_DURATION_SECONDS))


def _optional_int(value: Any) -> int | None:
    # 0 is a real value here, only NULL means absent
    return None if value is None else int(value)


@dataclass
class Session:
    """
    A tracked unit of work.

    LIFECYCLE:
    1. Created 'active' by the lifecycle controller
    2. Aggregate counters recomputed by the store on every event insert
    3. Transitioned to 'completed' exactly once (end, close-stale, recover)

    SCOPE:
    ``working_directory`` and ``git_root`` together identify the slot a
    session occupies; a session belongs to a directory if either matches.
    """

    id: int
    name: str
    start_time: str
    working_directory: str
    status: str = "active"
    end_time: str | None = None
    duration: int | None = None
    git_root: str | None = None
    start_git_head: str | None = None
    files_changed: int = 0
    commits: int = 0
    ai_cost: float = 0.0
    ai_tokens: int = 0
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        """True while the session has not been ended."""
        return self.status == "active"

    @property
    def scope_dir(self) -> str:
        """Directory identifying this session's slot (git root when known)."""
        return self.git_root or self.working_directory

    def live_duration(self, now: datetime | None = None) -> int:
        """
        Seconds elapsed since start (for active sessions) or stored duration.

        Args:
            now: Reference time, defaults to the current UTC time.

        Returns:
            Elapsed seconds clamped to the duration ceiling.
        """
        if not self.is_active and self.duration is not None:
            return self.duration
        reference = (now or datetime.now(UTC)).isoformat()
        return clamp_duration(self.start_time, reference)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Session:
        """
        Build a Session from a sessions table row.

        The cost is re-rounded on read so that values written by older
        releases (which stored unrounded sums) come back on scale.
        """
        keys = row.keys() if hasattr(row, "keys") else ()
        return cls(
            id=int(row["id"]),
            name=row["name"],
            start_time=row["start_time"],
            working_directory=row["working_directory"],
            status=row["status"] or "active",
            end_time=row["end_time"],
            duration=_optional_int(row["duration"]),
            git_root=row["git_root"] if "git_root" in keys else None,
            start_git_head=row["start_git_head"] if "start_git_head" in keys else None,
            files_changed=int(row["files_changed"] or 0),
            commits=int(row["commits"] or 0),
            ai_cost=round_cost(row["ai_cost"]),
            ai_tokens=int(row["ai_tokens"] or 0),
            notes=row["notes"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (all fields, snake_case keys)."""
        return asdict(self)


@dataclass
class FileChange:
    """A file touched during a session. Append-only."""

    session_id: int
    file_path: str
    change_type: str
    timestamp: str
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> FileChange:
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            file_path=row["file_path"],
            change_type=row["change_type"],
            timestamp=row["timestamp"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Commit:
    """A git commit observed during a session. Append-only."""

    session_id: int
    hash: str
    message: str
    timestamp: str
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Commit:
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            hash=row["hash"],
            message=row["message"],
            timestamp=row["timestamp"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AIUsage:
    """
    One AI call billed to a session. Append-only.

    ``prompt_tokens`` and ``completion_tokens`` are optional: None means
    the split was not reported, 0 means it was reported as zero.
    """

    session_id: int
    provider: str
    model: str
    tokens: int
    cost: float
    timestamp: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    agent_name: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AIUsage:
        keys = row.keys() if hasattr(row, "keys") else ()
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            provider=row["provider"],
            model=row["model"],
            tokens=int(row["tokens"]),
            cost=round_cost(row["cost"]),
            timestamp=row["timestamp"],
            prompt_tokens=_optional_int(row["prompt_tokens"]),
            completion_tokens=_optional_int(row["completion_tokens"]),
            agent_name=row["agent_name"] if "agent_name" in keys else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionNote:
    """A timestamped annotation on a session. Append-only."""

    session_id: int
    message: str
    timestamp: str
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SessionNote:
        return cls(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            message=row["message"],
            timestamp=row["timestamp"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionStats:
    """Aggregate rollup over completed sessions only."""

    total_sessions: int = 0
    total_time: int = 0
    total_files: int = 0
    total_commits: int = 0
    total_ai_cost: float = 0.0
    total_ai_tokens: int = 0
    avg_session_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
