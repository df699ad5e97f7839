"""
Accounting store for codesession.

PURPOSE: Durable, atomic bookkeeping for sessions and their event streams.
AI CONTEXT: All persistence goes through this module. Several OS processes
(an interactive tracker, agent sessions, the dashboard) may open the same
store file at once, so every write is a short transaction.

STORAGE STRUCTURE:
    ~/.codesession/sessions.db
    ├── sessions        # One row per session, aggregate counters cached
    ├── file_changes    # Append-only (session_id, file_path, change_type)
    ├── commits         # Append-only (session_id, hash, message)
    ├── ai_usage        # Append-only (session_id, provider, model, tokens, cost)
    └── session_notes   # Append-only (session_id, message)

CONCURRENCY STRATEGY:
- WAL journal so readers never block the single writer
- busy_timeout so a writer waits (bounded) instead of failing on a lock
- One connection per operation, so the store is safe to call from
  asyncio.to_thread() workers and from several threads at once
- Writes open with BEGIN IMMEDIATE, insert the event, then recompute the
  session aggregate from the full event history in the same transaction.
  Counters are never incremented, so concurrent writers cannot lose updates.

ERROR HANDLING STRATEGY:
- Any exception inside a transaction rolls it back and re-raises
- Unknown session ids raise SessionNotFoundError
- Corrupt legacy store copy: integrity check fails, copy discarded

USAGE:
    store = AccountingStore()                       # ~/.codesession/sessions.db
    store = AccountingStore(db_path=str(tmp_path / "s.db"))   # tests
    sid = store.create_session("Fix login", "/repo")
    store.record_file_change(sid, "src/app.py", "modified")
"""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from .config import Config
from .errors import BudgetExceededError, InvalidArgumentError, SessionNotFoundError
from .filesystem import RealFileSystem
from .models import (
    AIUsage,
    Commit,
    FileChange,
    Session,
    SessionNote,
    SessionStats,
    clamp_duration,
    now_iso,
    parse_iso,
    round_cost,
)

if TYPE_CHECKING:
    from .filesystem import FileSystem

__all__ = ["AccountingStore", "STALE_RECOVERY_NOTE", "CSV_COLUMNS"]

logger = logging.getLogger(__name__)

STALE_RECOVERY_NOTE = " [auto-recovered: stale session]"

CSV_COLUMNS = (
    "id",
    "name",
    "status",
    "start_time",
    "end_time",
    "duration",
    "files_changed",
    "commits",
    "ai_tokens",
    "ai_cost",
    "notes",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration INTEGER,
        working_directory TEXT NOT NULL,
        files_changed INTEGER DEFAULT 0,
        commits INTEGER DEFAULT 0,
        ai_cost REAL DEFAULT 0,
        ai_tokens INTEGER DEFAULT 0,
        notes TEXT,
        status TEXT DEFAULT 'active'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS file_changes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        file_path TEXT NOT NULL,
        change_type TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS commits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        hash TEXT NOT NULL,
        message TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_usage (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        tokens INTEGER NOT NULL,
        cost REAL NOT NULL,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_notes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL,
        message TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_file_changes_session ON file_changes(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_commits_session ON commits(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_ai_usage_session ON ai_usage(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_session ON session_notes(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)",
)

# (table, column, declaration) applied after the base schema on every open
_MIGRATIONS = (
    ("sessions", "git_root", "TEXT"),
    ("sessions", "start_git_head", "TEXT"),
    ("ai_usage", "prompt_tokens", "INTEGER"),
    ("ai_usage", "completion_tokens", "INTEGER"),
    ("ai_usage", "agent_name", "TEXT"),
)


class AccountingStore:
    """
    SQLite-backed store for sessions and their append-only event streams.

    DESIGN PRINCIPLES:
    1. Atomic: every multi-step write is one BEGIN IMMEDIATE transaction
    2. Authoritative aggregates: counters are recomputed, never incremented
    3. Idempotent: schema creation and column migrations are safe to repeat
    4. Thread-safe: no connection is shared between calls

    The store does not enforce "one active session per directory". That is
    a lifecycle policy layered on top by SessionService, so explicit
    multi-session use (agents, --close-stale) stays possible.
    """

    def __init__(
        self,
        db_path: str | None = None,
        legacy_dir: str | None = None,
        filesystem: FileSystem | None = None,
    ) -> None:
        """
        Open (and if needed create and migrate) the store.

        Args:
            db_path: Store file path. Default: Config.db_path(). Use
                ":memory:" only for single-call experiments; tests should use
                a temporary file since every operation opens a connection.
            legacy_dir: Pre-rename data directory to migrate from. Defaults
                to Config.legacy_data_dir() when db_path is the default,
                otherwise no migration is attempted.
            filesystem: FileSystem used for directory creation and the
                legacy copy. Default: RealFileSystem.

        Raises:
            OSError: If the data directory cannot be created. This is the
                one unrecoverable startup condition.
        """
        self._fs: FileSystem = filesystem or RealFileSystem()
        using_default = db_path is None
        self.db_path = db_path or Config.db_path()
        self.data_dir = os.path.dirname(os.path.abspath(self.db_path))

        if legacy_dir is None and using_default:
            legacy_dir = Config.legacy_data_dir()
        if legacy_dir:
            self._migrate_legacy_dir(legacy_dir)

        self._fs.makedirs(self.data_dir, exist_ok=True)
        self._initialize_schema()

    # =========================================================================
    # CONNECTION AND TRANSACTION HELPERS
    # =========================================================================

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=Config.BUSY_TIMEOUT_MS / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {Config.BUSY_TIMEOUT_MS}")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside BEGIN IMMEDIATE ... COMMIT.

        IMMEDIATE takes the write lock up front, so the insert and the
        aggregate recompute that follows it see a consistent event history.
        Any exception rolls the whole block back and propagates.
        """
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """
        Run a read-only query and return all rows.

        Used by StatisticsEngine for rollups so that the SQL for reports
        lives next to the report logic.
        """
        with self._connection() as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Run a read-only query and return the first row (or None)."""
        with self._connection() as conn:
            return conn.execute(sql, tuple(params)).fetchone()

    # =========================================================================
    # SCHEMA AND MIGRATIONS
    # =========================================================================

    def _initialize_schema(self) -> None:
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
            for table, column, declaration in _MIGRATIONS:
                self._add_column_if_missing(conn, table, column, declaration)
        logger.debug(f"Store initialized: {self.db_path}")

    @staticmethod
    def _add_column_if_missing(
        conn: sqlite3.Connection, table: str, column: str, declaration: str
    ) -> bool:
        """
        Add a column unless it already exists.

        Two processes may race on the same migration; the loser sees a
        "duplicate column" error, which is treated as success.

        Returns:
            True if the column was added by this call.
        """
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
        if column in existing:
            return False
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")
        except sqlite3.OperationalError as e:
            if "duplicate column" in str(e).lower():
                return False
            raise
        logger.info(f"Migrated store: added {table}.{column}")
        return True

    def _migrate_legacy_dir(self, legacy_dir: str) -> None:
        """
        Copy the store and pricing file from the pre-rename data directory.

        Runs only when the legacy directory exists and the current one does
        not. The copied store is trusted only if PRAGMA integrity_check
        reports "ok"; otherwise the copy is removed and a fresh store is
        created in its place.
        """
        if not self._fs.exists(legacy_dir) or self._fs.exists(self.data_dir):
            return

        self._fs.makedirs(self.data_dir, exist_ok=True)
        legacy_db = os.path.join(legacy_dir, Config.DB_FILE)
        if not self._fs.is_file(legacy_db):
            return

        self._fs.copy_file(legacy_db, self.db_path)
        if not self._verify_integrity(self.db_path):
            logger.warning(f"Legacy store {legacy_db} failed integrity check, starting fresh")
            self._fs.remove(self.db_path)
            return

        legacy_pricing = os.path.join(legacy_dir, Config.PRICING_FILE)
        if self._fs.is_file(legacy_pricing):
            self._fs.copy_file(legacy_pricing, os.path.join(self.data_dir, Config.PRICING_FILE))
        logger.info(f"Migrated data from {legacy_dir} to {self.data_dir}")

    @staticmethod
    def _verify_integrity(path: str) -> bool:
        try:
            conn = sqlite3.connect(path)
            try:
                row = conn.execute("PRAGMA integrity_check").fetchone()
            finally:
                conn.close()
        except sqlite3.DatabaseError as e:
            logger.warning(f"Integrity check could not run on {path}: {e}")
            return False
        return row is not None and row[0] == "ok"

    # =========================================================================
    # SESSION LIFECYCLE WRITES
    # =========================================================================

    def create_session(
        self,
        name: str,
        working_directory: str,
        start_time: str | None = None,
        git_root: str | None = None,
        start_git_head: str | None = None,
    ) -> int:
        """
        Insert a new active session.

        Args:
            name: Display name (must be non-empty).
            working_directory: Directory the session was started from.
            start_time: ISO timestamp. Default: now.
            git_root: Repository root, used for scoping.
            start_git_head: HEAD hash at start, used for back-fill on end.

        Returns:
            The store-assigned session id.

        Raises:
            InvalidArgumentError: If name is empty or blank.
        """
        if not name or not name.strip():
            raise InvalidArgumentError("Session name must not be empty")
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sessions
                    (name, start_time, working_directory, git_root, start_git_head, status)
                VALUES (?, ?, ?, ?, ?, 'active')
                """,
                (name, start_time or now_iso(), working_directory, git_root, start_git_head),
            )
            session_id = int(cursor.lastrowid)
        logger.info(f"Created session {session_id}: {name}")
        return session_id

    def end_session(
        self,
        session_id: int,
        end_time: str | None = None,
        notes: str | None = None,
    ) -> Session:
        """
        Transition a session to completed, finalizing duration and notes.

        Duration is end_time - start_time clamped to [0, 1 year]. Ending a
        session that is already completed is a no-op that returns it
        unchanged, so the transition happens exactly once.

        Returns:
            The session as stored after the call.

        Raises:
            SessionNotFoundError: If no session has this id.
        """
        end_time = end_time or now_iso()
        with self._transaction() as conn:
            row = self._require_session(conn, session_id)
            if row["status"] != "active":
                logger.debug(f"Session {session_id} already completed, end ignored")
                return Session.from_row(row)
            duration = clamp_duration(row["start_time"], end_time)
            conn.execute(
                """
                UPDATE sessions
                SET end_time = ?, duration = ?, status = 'completed', notes = ?
                WHERE id = ?
                """,
                (end_time, duration, notes, session_id),
            )
            ended = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        logger.info(f"Ended session {session_id} after {duration}s")
        return Session.from_row(ended)

    def recover_stale_sessions(
        self,
        max_age_hours: float = Config.DEFAULT_STALE_HOURS,
        now: datetime | None = None,
    ) -> list[Session]:
        """
        Complete active sessions whose start is older than max_age_hours.

        Each recovered session gets end_time = now, a clamped duration and
        STALE_RECOVERY_NOTE appended to its notes. Sessions ended
        concurrently by another process are skipped.

        Args:
            max_age_hours: Age threshold in hours.
            now: Reference time (tests). Default: current UTC time.

        Returns:
            The recovered sessions as stored after recovery.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=max_age_hours)
        end_time = now.isoformat()
        recovered: list[Session] = []

        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM sessions WHERE status = 'active'").fetchall()
            for row in rows:
                try:
                    started = parse_iso(row["start_time"])
                except ValueError:
                    logger.warning(f"Session {row['id']} has unreadable start time, recovering")
                    started = cutoff - timedelta(seconds=1)
                if started >= cutoff:
                    continue
                conn.execute(
                    """
                    UPDATE sessions
                    SET end_time = ?, duration = ?, status = 'completed',
                        notes = COALESCE(notes, '') || ?
                    WHERE id = ? AND status = 'active'
                    """,
                    (
                        end_time,
                        clamp_duration(row["start_time"], end_time),
                        STALE_RECOVERY_NOTE,
                        row["id"],
                    ),
                )
                updated = conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (row["id"],)
                ).fetchone()
                recovered.append(Session.from_row(updated))

        for session in recovered:
            logger.info(f"Recovered stale session {session.id}: {session.name}")
        return recovered

    # =========================================================================
    # EVENT WRITES (insert + authoritative recompute)
    # =========================================================================

    def record_file_change(
        self,
        session_id: int,
        file_path: str,
        change_type: str,
        timestamp: str | None = None,
    ) -> int:
        """
        Record a file change and recompute the distinct-file count.

        Duplicate or out-of-order deliveries are harmless: the counter is
        COUNT(DISTINCT file_path) over the whole history.

        Returns:
            The session's files_changed value after this write.

        Raises:
            InvalidArgumentError: If change_type is not created/modified/deleted.
            SessionNotFoundError: If no session has this id or it is not active.
        """
        if change_type not in Config.CHANGE_KINDS:
            raise InvalidArgumentError(f"Unknown change type: {change_type}")
        with self._transaction() as conn:
            self._require_active(conn, session_id)
            conn.execute(
                """
                INSERT INTO file_changes (session_id, file_path, change_type, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, file_path, change_type, timestamp or now_iso()),
            )
            count = conn.execute(
                "SELECT COUNT(DISTINCT file_path) FROM file_changes WHERE session_id = ?",
                (session_id,),
            ).fetchone()[0]
            conn.execute(
                "UPDATE sessions SET files_changed = ? WHERE id = ?", (count, session_id)
            )
        return int(count)

    def record_commit(
        self,
        session_id: int,
        commit_hash: str,
        message: str,
        timestamp: str | None = None,
    ) -> int:
        """
        Record a commit and recompute the session's commit count.

        Returns:
            The session's commits value after this write.

        Raises:
            SessionNotFoundError: If no session has this id or it is not active.
        """
        with self._transaction() as conn:
            self._require_active(conn, session_id)
            conn.execute(
                "INSERT INTO commits (session_id, hash, message, timestamp) VALUES (?, ?, ?, ?)",
                (session_id, commit_hash, message, timestamp or now_iso()),
            )
            count = conn.execute(
                "SELECT COUNT(*) FROM commits WHERE session_id = ?", (session_id,)
            ).fetchone()[0]
            conn.execute("UPDATE sessions SET commits = ? WHERE id = ?", (count, session_id))
        return int(count)

    def record_ai_usage(
        self,
        session_id: int,
        provider: str,
        model: str,
        tokens: int,
        cost: float,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        agent_name: str | None = None,
        timestamp: str | None = None,
        budget: float | None = None,
    ) -> tuple[float, int]:
        """
        Record AI usage and recompute cumulative cost and tokens.

        The cost total is SUM(cost) rounded to Config.COST_DECIMALS places.
        Prompt/completion tokens are stored exactly as given: None stays
        NULL and 0 stays 0.

        When a budget is given, the running total plus this cost is checked
        inside the write transaction before the insert. A breach raises and
        rolls back, so nothing is persisted and a concurrent writer cannot
        slip in between the check and the write.

        Returns:
            Tuple of (ai_cost, ai_tokens) for the session after this write.

        Raises:
            SessionNotFoundError: If no session has this id or it is not active.
            BudgetExceededError: If the write would push the total past budget.
        """
        with self._transaction() as conn:
            self._require_active(conn, session_id)
            if budget is not None:
                current = conn.execute(
                    "SELECT SUM(cost) FROM ai_usage WHERE session_id = ?", (session_id,)
                ).fetchone()[0]
                projected = round_cost(round_cost(current) + cost)
                if projected > budget:
                    raise BudgetExceededError(projected, budget)
            conn.execute(
                """
                INSERT INTO ai_usage
                    (session_id, provider, model, tokens, prompt_tokens,
                     completion_tokens, cost, agent_name, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    provider,
                    model,
                    tokens,
                    prompt_tokens,
                    completion_tokens,
                    cost,
                    agent_name,
                    timestamp or now_iso(),
                ),
            )
            totals = conn.execute(
                "SELECT SUM(cost), SUM(tokens) FROM ai_usage WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            total_cost = round_cost(totals[0])
            total_tokens = int(totals[1] or 0)
            conn.execute(
                "UPDATE sessions SET ai_cost = ?, ai_tokens = ? WHERE id = ?",
                (total_cost, total_tokens, session_id),
            )
        return total_cost, total_tokens

    def add_note(self, session_id: int, message: str) -> SessionNote:
        """
        Append a timestamped note to a session.

        Raises:
            SessionNotFoundError: If no session has this id.
        """
        timestamp = now_iso()
        with self._transaction() as conn:
            self._require_session(conn, session_id)
            cursor = conn.execute(
                "INSERT INTO session_notes (session_id, message, timestamp) VALUES (?, ?, ?)",
                (session_id, message, timestamp),
            )
            note_id = int(cursor.lastrowid)
        return SessionNote(id=note_id, session_id=session_id, message=message, timestamp=timestamp)

    def clear_all(self) -> None:
        """Delete every session and event (bulk reset)."""
        with self._transaction() as conn:
            for table in ("file_changes", "commits", "ai_usage", "session_notes", "sessions"):
                conn.execute(f"DELETE FROM {table}")
        logger.warning("All session data cleared")

    @staticmethod
    def _require_session(conn: sqlite3.Connection, session_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    @classmethod
    def _require_active(cls, conn: sqlite3.Connection, session_id: int) -> sqlite3.Row:
        row = cls._require_session(conn, session_id)
        if row["status"] != "active":
            raise SessionNotFoundError(session_id, f"Session {session_id} is not active")
        return row

    # =========================================================================
    # SESSION READS
    # =========================================================================

    def get_session(self, session_id: int) -> Session | None:
        """Get a session by id, or None if it does not exist."""
        row = self.fetch_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return Session.from_row(row) if row else None

    def get_sessions(self, limit: int = 10) -> list[Session]:
        """Get the most recently started sessions, newest first."""
        rows = self.fetch_all(
            "SELECT * FROM sessions ORDER BY start_time DESC, id DESC LIMIT ?", (limit,)
        )
        return [Session.from_row(row) for row in rows]

    def get_active_sessions(self) -> list[Session]:
        """Get every active session, newest first."""
        rows = self.fetch_all("SELECT * FROM sessions WHERE status = 'active' ORDER BY id DESC")
        return [Session.from_row(row) for row in rows]

    def get_active_session(self) -> Session | None:
        """Get the most recently created active session, if any."""
        row = self.fetch_one(
            "SELECT * FROM sessions WHERE status = 'active' ORDER BY id DESC LIMIT 1"
        )
        return Session.from_row(row) if row else None

    def get_active_session_for_dir(
        self, directory: str, git_root: str | None = None
    ) -> Session | None:
        """
        Find the active session occupying a directory's slot.

        A session belongs to the slot if its working directory or its git
        root equals either the given directory or the given git root. This
        resolves a session started at a repository root when the lookup is
        made from a subdirectory of the same repository.

        Args:
            directory: Directory the caller is in.
            git_root: Repository root of that directory, if known.

        Returns:
            Most recent matching active session, or None.
        """
        candidates = [directory] if not git_root else [directory, git_root]
        marks = ", ".join("?" for _ in candidates)
        row = self.fetch_one(
            f"""
            SELECT * FROM sessions
            WHERE status = 'active'
              AND (working_directory IN ({marks}) OR git_root IN ({marks}))
            ORDER BY id DESC LIMIT 1
            """,
            (*candidates, *candidates),
        )
        return Session.from_row(row) if row else None

    def get_sessions_paginated(
        self,
        limit: int = 50,
        offset: int = 0,
        status: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        """
        Get one page of sessions with the unpaged total.

        Args:
            limit: Page size.
            offset: Rows to skip.
            status: Optional 'active' / 'completed' filter.
            search: Optional case-insensitive substring of name or notes.

        Returns:
            Dict with 'sessions' (list of Session), 'total', 'limit', 'offset'.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if search:
            clauses.append("(name LIKE ? OR COALESCE(notes, '') LIKE ?)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total_row = self.fetch_one(f"SELECT COUNT(*) FROM sessions {where}", params)
        rows = self.fetch_all(
            f"SELECT * FROM sessions {where} ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return {
            "sessions": [Session.from_row(row) for row in rows],
            "total": int(total_row[0]) if total_row else 0,
            "limit": limit,
            "offset": offset,
        }

    # =========================================================================
    # EVENT READS
    # =========================================================================

    def get_file_changes(self, session_id: int) -> list[FileChange]:
        rows = self.fetch_all(
            "SELECT * FROM file_changes WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [FileChange.from_row(row) for row in rows]

    def get_commits(self, session_id: int) -> list[Commit]:
        rows = self.fetch_all(
            "SELECT * FROM commits WHERE session_id = ? ORDER BY timestamp, id", (session_id,)
        )
        return [Commit.from_row(row) for row in rows]

    def get_ai_usage(self, session_id: int) -> list[AIUsage]:
        rows = self.fetch_all(
            "SELECT * FROM ai_usage WHERE session_id = ? ORDER BY timestamp, id", (session_id,)
        )
        return [AIUsage.from_row(row) for row in rows]

    def get_notes(self, session_id: int) -> list[SessionNote]:
        rows = self.fetch_all(
            "SELECT * FROM session_notes WHERE session_id = ? ORDER BY timestamp, id",
            (session_id,),
        )
        return [SessionNote.from_row(row) for row in rows]

    def get_session_detail(self, session_id: int) -> dict[str, Any] | None:
        """
        Get a session together with all of its events.

        Returns:
            Dict with 'session', 'files', 'commits', 'ai_usage', 'notes'
            (all serialized), or None if the session does not exist.
        """
        session = self.get_session(session_id)
        if session is None:
            return None
        return {
            "session": session.to_dict(),
            "files": [f.to_dict() for f in self.get_file_changes(session_id)],
            "commits": [c.to_dict() for c in self.get_commits(session_id)],
            "ai_usage": [u.to_dict() for u in self.get_ai_usage(session_id)],
            "notes": [n.to_dict() for n in self.get_notes(session_id)],
        }

    # =========================================================================
    # ROLLUPS AND EXPORT
    # =========================================================================

    def get_stats(self) -> SessionStats:
        """Aggregate counts, sums and averages over completed sessions only."""
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS total,
                   SUM(duration) AS total_time,
                   SUM(files_changed) AS total_files,
                   SUM(commits) AS total_commits,
                   SUM(ai_cost) AS total_cost,
                   SUM(ai_tokens) AS total_tokens,
                   AVG(duration) AS avg_time
            FROM sessions WHERE status = 'completed'
            """
        )
        if row is None:
            return SessionStats()
        return SessionStats(
            total_sessions=int(row["total"] or 0),
            total_time=int(row["total_time"] or 0),
            total_files=int(row["total_files"] or 0),
            total_commits=int(row["total_commits"] or 0),
            total_ai_cost=round_cost(row["total_cost"]),
            total_ai_tokens=int(row["total_tokens"] or 0),
            avg_session_time=float(row["avg_time"] or 0.0),
        )

    def export_sessions(self, fmt: str = "json", limit: int | None = None) -> str:
        """
        Export sessions as JSON (with events) or CSV (session rows only).

        CSV fields are written with the csv module, which quotes any field
        containing a quote, comma, newline or carriage return, so free-text
        names and notes never break row boundaries.

        Args:
            fmt: 'json' or 'csv'.
            limit: Maximum number of sessions (newest first). Default: all.

        Returns:
            The serialized export.

        Raises:
            InvalidArgumentError: If fmt is neither 'json' nor 'csv'.
        """
        if fmt not in ("json", "csv"):
            raise InvalidArgumentError(f"Unsupported export format: {fmt}")
        if limit is None:
            rows = self.fetch_all("SELECT * FROM sessions ORDER BY start_time DESC, id DESC")
            sessions = [Session.from_row(row) for row in rows]
        else:
            sessions = self.get_sessions(limit)

        if fmt == "json":
            payload = []
            for session in sessions:
                entry = session.to_dict()
                entry["ai_usage"] = [u.to_dict() for u in self.get_ai_usage(session.id)]
                entry["files"] = [f.to_dict() for f in self.get_file_changes(session.id)]
                entry["commits"] = [c.to_dict() for c in self.get_commits(session.id)]
                payload.append(entry)
            return json.dumps(payload, indent=2)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for session in sessions:
            record = session.to_dict()
            writer.writerow(["" if record[col] is None else record[col] for col in CSV_COLUMNS])
        return buffer.getvalue()
