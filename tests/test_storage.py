"""Tests for the SQLite accounting store.

Each test gets a fresh store file under tmp_path (see the ``store``
fixture in conftest.py). Concurrency tests open several threads against
the same file, which is how the CLI, agent sessions and the dashboard
share one store in practice.
"""

from __future__ import annotations

import csv
import io
import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from codesession_tracker.errors import (
    BudgetExceededError,
    InvalidArgumentError,
    SessionNotFoundError,
)
from codesession_tracker.storage import STALE_RECOVERY_NOTE, AccountingStore


class TestSessionLifecycle:
    """create_session / end_session."""

    def test_create_and_get(self, store: AccountingStore) -> None:
        sid = store.create_session("Fix login", "/repo", git_root="/repo", start_git_head="abc")
        session = store.get_session(sid)
        assert session is not None
        assert session.name == "Fix login"
        assert session.status == "active"
        assert session.start_git_head == "abc"
        assert session.files_changed == 0

    def test_ids_are_distinct(self, store: AccountingStore) -> None:
        assert store.create_session("a", "/a") != store.create_session("b", "/b")

    def test_blank_name_rejected(self, store: AccountingStore) -> None:
        with pytest.raises(InvalidArgumentError):
            store.create_session("   ", "/repo")

    def test_get_missing_session_is_none(self, store: AccountingStore) -> None:
        assert store.get_session(999) is None

    def test_end_session_sets_duration(self, store: AccountingStore) -> None:
        """Verifies end computes the clamped duration and completes the row.

        Arrangement:
        Session started at a fixed time.

        Action:
        End it 90 minutes later with notes.

        Assertion Strategy:
        Status, end time, duration and notes all persisted.
        """
        sid = store.create_session("Refactor", "/repo", start_time="2026-01-05T10:00:00+00:00")
        ended = store.end_session(sid, end_time="2026-01-05T11:30:00+00:00", notes="done")
        assert ended.status == "completed"
        assert ended.duration == 5400
        assert ended.notes == "done"
        assert ended.end_time == "2026-01-05T11:30:00+00:00"

    def test_end_before_start_clamps_to_zero(self, store: AccountingStore) -> None:
        sid = store.create_session("Skew", "/repo", start_time="2026-01-05T10:00:00+00:00")
        assert store.end_session(sid, end_time="2026-01-05T09:00:00+00:00").duration == 0

    def test_end_twice_is_noop(self, store: AccountingStore) -> None:
        """The completed transition happens exactly once."""
        sid = store.create_session("Once", "/repo", start_time="2026-01-05T10:00:00+00:00")
        first = store.end_session(sid, end_time="2026-01-05T10:10:00+00:00", notes="first")
        second = store.end_session(sid, end_time="2026-01-05T12:00:00+00:00", notes="second")
        assert second.duration == first.duration == 600
        assert second.notes == "first"

    def test_end_unknown_session_raises(self, store: AccountingStore) -> None:
        with pytest.raises(SessionNotFoundError):
            store.end_session(404)


class TestEventWrites:
    """File changes, commits, AI usage and notes."""

    def test_files_changed_counts_distinct_paths(self, store: AccountingStore) -> None:
        sid = store.create_session("Files", "/repo")
        store.record_file_change(sid, "src/app.py", "created")
        store.record_file_change(sid, "src/app.py", "modified")
        count = store.record_file_change(sid, "README.md", "modified")
        assert count == 2
        assert store.get_session(sid).files_changed == 2  # type: ignore[union-attr]
        assert len(store.get_file_changes(sid)) == 3

    def test_unknown_change_kind_rejected(self, store: AccountingStore) -> None:
        sid = store.create_session("Files", "/repo")
        with pytest.raises(InvalidArgumentError):
            store.record_file_change(sid, "a.py", "renamed")

    def test_event_for_unknown_session_raises(self, store: AccountingStore) -> None:
        with pytest.raises(SessionNotFoundError):
            store.record_file_change(77, "a.py", "created")
        with pytest.raises(SessionNotFoundError):
            store.record_commit(77, "abc1234", "msg")
        with pytest.raises(SessionNotFoundError):
            store.record_ai_usage(77, "openai", "gpt-4o", 10, 0.01)

    def test_events_for_completed_session_refused(self, store: AccountingStore) -> None:
        """Verifies a completed session accepts no further events.

        Business context:
        A tracker in another process may still be running when `cs end`
        completes the session; its late writes must not move the final
        counters.

        Assertion Strategy:
        Every event write raises and the completed row is unchanged.
        """
        sid = store.create_session("Done", "/repo")
        store.record_file_change(sid, "a.py", "created")
        ended = store.end_session(sid)

        with pytest.raises(SessionNotFoundError, match="not active"):
            store.record_file_change(sid, "late.py", "modified")
        with pytest.raises(SessionNotFoundError):
            store.record_commit(sid, "abc1234", "late")
        with pytest.raises(SessionNotFoundError):
            store.record_ai_usage(sid, "openai", "gpt-4o", 10, 0.01)

        assert store.get_session(sid) == ended
        assert [f.file_path for f in store.get_file_changes(sid)] == ["a.py"]
        assert store.get_commits(sid) == []

    def test_commit_count(self, store: AccountingStore) -> None:
        sid = store.create_session("Commits", "/repo")
        store.record_commit(sid, "abc1234", "First")
        assert store.record_commit(sid, "def5678", "Second") == 2
        assert [c.hash for c in store.get_commits(sid)] == ["abc1234", "def5678"]

    def test_ai_usage_totals_are_rounded(self, store: AccountingStore) -> None:
        sid = store.create_session("AI", "/repo")
        store.record_ai_usage(sid, "openai", "gpt-4o", 100, 0.1)
        total_cost, total_tokens = store.record_ai_usage(sid, "openai", "gpt-4o", 200, 0.2)
        assert total_cost == 0.3
        assert total_tokens == 300
        session = store.get_session(sid)
        assert session is not None
        assert session.ai_cost == 0.3

    def test_ai_usage_split_stored_verbatim(self, store: AccountingStore) -> None:
        sid = store.create_session("AI", "/repo")
        store.record_ai_usage(sid, "openai", "gpt-4o", 10, 0.0, prompt_tokens=0)
        usage = store.get_ai_usage(sid)[0]
        assert usage.prompt_tokens == 0
        assert usage.completion_tokens is None

    def test_ai_usage_budget_breach_writes_nothing(self, store: AccountingStore) -> None:
        """Verifies a budget breach rolls back before the insert.

        Business context:
        Callers rely on the stored totals being unchanged when they
        catch BudgetExceededError.
        """
        sid = store.create_session("Budget", "/repo")
        store.record_ai_usage(sid, "anthropic", "claude-sonnet-4", 100, 4.0, budget=5.0)
        with pytest.raises(BudgetExceededError) as exc_info:
            store.record_ai_usage(sid, "anthropic", "claude-sonnet-4", 100, 1.5, budget=5.0)
        assert exc_info.value.spent == 5.5
        assert exc_info.value.budget == 5.0
        assert len(store.get_ai_usage(sid)) == 1
        assert store.get_session(sid).ai_cost == 4.0  # type: ignore[union-attr]

    def test_ai_usage_exactly_on_budget_is_allowed(self, store: AccountingStore) -> None:
        sid = store.create_session("Budget", "/repo")
        store.record_ai_usage(sid, "anthropic", "claude-sonnet-4", 100, 4.0)
        total, _ = store.record_ai_usage(sid, "anthropic", "claude-sonnet-4", 100, 1.0, budget=5.0)
        assert total == 5.0

    def test_add_note(self, store: AccountingStore) -> None:
        sid = store.create_session("Notes", "/repo")
        note = store.add_note(sid, "switched approach")
        assert note.id is not None
        assert [n.message for n in store.get_notes(sid)] == ["switched approach"]

    def test_clear_all(self, store: AccountingStore) -> None:
        sid = store.create_session("Gone", "/repo")
        store.record_commit(sid, "abc1234", "msg")
        store.clear_all()
        assert store.get_sessions() == []
        assert store.fetch_one("SELECT COUNT(*) FROM commits")[0] == 0  # type: ignore[index]


class TestConcurrentWriters:
    """Aggregates stay exact with many concurrent writers."""

    def test_parallel_ai_usage_and_file_changes(self, store: AccountingStore) -> None:
        """Verifies no update is lost when threads write to one session.

        Arrangement:
        One session; 8 threads each log 10 AI calls and touch 10 files.

        Action:
        Run all threads to completion.

        Assertion Strategy:
        Cached aggregates equal the recomputed sums over the event rows.
        """
        sid = store.create_session("Race", "/repo")
        errors: list[BaseException] = []

        def worker(n: int) -> None:
            try:
                for i in range(10):
                    store.record_ai_usage(sid, "openai", "gpt-4o", 10, 0.001)
                    store.record_file_change(sid, f"w{n}/f{i}.py", "modified")
            except BaseException as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        session = store.get_session(sid)
        assert session is not None
        assert session.ai_tokens == 800
        assert session.ai_cost == 0.08
        assert session.files_changed == 80

    def test_two_store_instances_share_file(self, store: AccountingStore) -> None:
        other = AccountingStore(db_path=store.db_path)
        sid = store.create_session("Shared", "/repo")
        other.record_commit(sid, "abc1234", "from another process")
        assert store.get_session(sid).commits == 1  # type: ignore[union-attr]


class TestQueries:
    """Scoped lookups, pagination and stats."""

    def test_active_session_for_subdirectory_via_git_root(self, store: AccountingStore) -> None:
        """A session started at the repo root is found from a subdirectory."""
        sid = store.create_session("Root", "/repo", git_root="/repo")
        found = store.get_active_session_for_dir("/repo/src/deep", "/repo")
        assert found is not None and found.id == sid

    def test_active_session_for_other_directory_is_none(self, store: AccountingStore) -> None:
        store.create_session("Root", "/repo", git_root="/repo")
        assert store.get_active_session_for_dir("/elsewhere", None) is None

    def test_completed_sessions_do_not_occupy_slot(self, store: AccountingStore) -> None:
        sid = store.create_session("Done", "/repo")
        store.end_session(sid)
        assert store.get_active_session_for_dir("/repo") is None

    def test_get_active_session_is_most_recent(self, store: AccountingStore) -> None:
        store.create_session("Older", "/a")
        newer = store.create_session("Newer", "/b")
        assert store.get_active_session().id == newer  # type: ignore[union-attr]

    def test_paginated_filters(self, store: AccountingStore) -> None:
        for i in range(5):
            sid = store.create_session(f"task {i}", "/repo", start_time=f"2026-01-0{i + 1}T10:00:00+00:00")
            if i % 2 == 0:
                store.end_session(sid, notes="auth work" if i == 4 else None)
        page = store.get_sessions_paginated(limit=2, offset=0, status="completed")
        assert page["total"] == 3
        assert [s.name for s in page["sessions"]] == ["task 4", "task 2"]
        assert page["limit"] == 2 and page["offset"] == 0

        searched = store.get_sessions_paginated(search="AUTH")
        assert [s.name for s in searched["sessions"]] == ["task 4"]

        second = store.get_sessions_paginated(limit=2, offset=2)
        assert [s.name for s in second["sessions"]] == ["task 2", "task 1"]
        assert second["total"] == 5

    def test_session_detail(self, store: AccountingStore) -> None:
        sid = store.create_session("Detail", "/repo")
        store.record_file_change(sid, "a.py", "created")
        store.record_commit(sid, "abc1234", "msg")
        store.record_ai_usage(sid, "openai", "gpt-4o", 10, 0.01)
        store.add_note(sid, "n")
        detail = store.get_session_detail(sid)
        assert detail is not None
        assert detail["session"]["id"] == sid
        assert len(detail["files"]) == len(detail["commits"]) == len(detail["ai_usage"]) == 1
        assert detail["notes"][0]["message"] == "n"
        assert store.get_session_detail(12345) is None

    def test_stats_cover_completed_only(self, store: AccountingStore) -> None:
        done = store.create_session("Done", "/repo", start_time="2026-01-05T10:00:00+00:00")
        store.record_ai_usage(done, "openai", "gpt-4o", 100, 1.0)
        store.end_session(done, end_time="2026-01-05T11:00:00+00:00")
        active = store.create_session("Active", "/repo")
        store.record_ai_usage(active, "openai", "gpt-4o", 100, 5.0)

        stats = store.get_stats()
        assert stats.total_sessions == 1
        assert stats.total_time == 3600
        assert stats.total_ai_cost == 1.0
        assert stats.avg_session_time == 3600.0

    def test_stats_on_empty_store(self, store: AccountingStore) -> None:
        assert store.get_stats().total_sessions == 0


class TestStaleRecovery:
    """recover_stale_sessions."""

    def test_recovers_only_old_active_sessions(self, store: AccountingStore) -> None:
        old = store.create_session("Old", "/a", start_time="2026-01-01T00:00:00+00:00")
        fresh = store.create_session("Fresh", "/b", start_time="2026-01-05T09:00:00+00:00")
        done = store.create_session("Done", "/c", start_time="2025-12-01T00:00:00+00:00")
        store.end_session(done, end_time="2025-12-01T01:00:00+00:00")

        now = datetime(2026, 1, 5, 10, 0, tzinfo=UTC)
        recovered = store.recover_stale_sessions(24, now=now)

        assert [s.id for s in recovered] == [old]
        assert recovered[0].status == "completed"
        assert recovered[0].notes == STALE_RECOVERY_NOTE
        assert recovered[0].duration == 4 * 86400 + 36000
        assert store.get_session(fresh).status == "active"  # type: ignore[union-attr]

    def test_recovery_appends_to_existing_notes(self, store: AccountingStore) -> None:
        sid = store.create_session("Old", "/a", start_time="2026-01-01T00:00:00+00:00")
        with store._transaction() as conn:
            conn.execute("UPDATE sessions SET notes = 'wip' WHERE id = ?", (sid,))
        recovered = store.recover_stale_sessions(1, now=datetime(2026, 1, 2, tzinfo=UTC))
        assert recovered[0].notes == "wip" + STALE_RECOVERY_NOTE

    def test_nothing_stale(self, store: AccountingStore) -> None:
        store.create_session("Now", "/a")
        assert store.recover_stale_sessions(24) == []


class TestExport:
    """JSON and CSV export."""

    def test_csv_quotes_hostile_fields(self, store: AccountingStore) -> None:
        """Verifies names/notes with quotes, commas and newlines round-trip.

        Business context:
        Session names are free text typed by users and agents; a comma or
        newline must not shift columns or split rows in spreadsheets.
        """
        sid = store.create_session('Fix "auth", then\nrefactor', "/repo")
        store.end_session(sid, notes="line1\r\nline2, with comma")
        rows = list(csv.reader(io.StringIO(store.export_sessions("csv"))))
        assert rows[0][:3] == ["id", "name", "status"]
        assert len(rows) == 2
        record = dict(zip(rows[0], rows[1], strict=True))
        assert record["name"] == 'Fix "auth", then\nrefactor'
        assert record["notes"] == "line1\r\nline2, with comma"

    def test_json_includes_events(self, store: AccountingStore) -> None:
        sid = store.create_session("Export", "/repo")
        store.record_ai_usage(sid, "openai", "gpt-4o", 10, 0.01)
        store.record_file_change(sid, "a.py", "created")
        payload = json.loads(store.export_sessions("json"))
        assert payload[0]["id"] == sid
        assert payload[0]["ai_usage"][0]["model"] == "gpt-4o"
        assert payload[0]["files"][0]["file_path"] == "a.py"
        assert payload[0]["commits"] == []

    def test_limit(self, store: AccountingStore) -> None:
        for i in range(3):
            store.create_session(f"s{i}", "/repo", start_time=f"2026-01-0{i + 1}T00:00:00+00:00")
        payload = json.loads(store.export_sessions("json", limit=2))
        assert [p["name"] for p in payload] == ["s2", "s1"]

    def test_unknown_format_rejected(self, store: AccountingStore) -> None:
        with pytest.raises(InvalidArgumentError):
            store.export_sessions("xml")


class TestMigrations:
    """Schema upgrades and the legacy data directory."""

    def _legacy_schema(self, path: str) -> None:
        conn = sqlite3.connect(path)
        conn.executescript(
            """
            CREATE TABLE sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL,
                start_time TEXT NOT NULL, end_time TEXT, duration INTEGER,
                working_directory TEXT NOT NULL, files_changed INTEGER DEFAULT 0,
                commits INTEGER DEFAULT 0, ai_cost REAL DEFAULT 0,
                ai_tokens INTEGER DEFAULT 0, notes TEXT, status TEXT DEFAULT 'active'
            );
            CREATE TABLE ai_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT, session_id INTEGER NOT NULL,
                provider TEXT NOT NULL, model TEXT NOT NULL, tokens INTEGER NOT NULL,
                cost REAL NOT NULL, timestamp TEXT NOT NULL
            );
            INSERT INTO sessions (name, start_time, working_directory, ai_cost, ai_tokens)
                VALUES ('old', '2025-06-01T10:00:00Z', '/legacy', 0.30000000000000004, 50);
            INSERT INTO ai_usage (session_id, provider, model, tokens, cost, timestamp)
                VALUES (1, 'openai', 'gpt-4o', 50, 0.30000000000000004, '2025-06-01T10:05:00Z');
            """
        )
        conn.commit()
        conn.close()

    def test_old_schema_gains_columns(self, tmp_path: Path) -> None:
        """Verifies opening an old store adds the new columns in place.

        Arrangement:
        A store file created with the original (pre-split) schema.

        Action:
        Open it with AccountingStore twice.

        Assertion Strategy:
        New columns exist, old rows read back with None for new fields,
        and the second open is a no-op.
        """
        path = str(tmp_path / "old.db")
        self._legacy_schema(path)
        store = AccountingStore(db_path=path)
        AccountingStore(db_path=path)

        columns = {row["name"] for row in store.fetch_all("PRAGMA table_info(ai_usage)")}
        assert {"prompt_tokens", "completion_tokens", "agent_name"} <= columns
        session = store.get_session(1)
        assert session is not None
        assert session.git_root is None
        assert session.ai_cost == 0.3
        assert store.get_ai_usage(1)[0].prompt_tokens is None

    def test_legacy_directory_is_copied(self, tmp_path: Path) -> None:
        legacy_dir = tmp_path / ".devsession"
        legacy = AccountingStore(db_path=str(legacy_dir / "sessions.db"))
        legacy.create_session("from legacy", "/repo")
        (legacy_dir / "pricing.json").write_text('{"m": {"input": 1, "output": 1}}')

        new_dir = tmp_path / ".codesession"
        store = AccountingStore(db_path=str(new_dir / "sessions.db"), legacy_dir=str(legacy_dir))
        assert [s.name for s in store.get_sessions()] == ["from legacy"]
        assert (new_dir / "pricing.json").exists()

    def test_corrupt_legacy_store_is_discarded(self, tmp_path: Path) -> None:
        legacy_dir = tmp_path / ".devsession"
        legacy_dir.mkdir()
        (legacy_dir / "sessions.db").write_bytes(b"this is not a sqlite database" * 10)

        new_dir = tmp_path / ".codesession"
        store = AccountingStore(db_path=str(new_dir / "sessions.db"), legacy_dir=str(legacy_dir))
        assert store.get_sessions() == []
        assert store.create_session("fresh", "/repo") == 1

    def test_existing_data_dir_skips_migration(self, tmp_path: Path) -> None:
        legacy_dir = tmp_path / ".devsession"
        AccountingStore(db_path=str(legacy_dir / "sessions.db")).create_session("old", "/r")
        new_dir = tmp_path / ".codesession"
        new_dir.mkdir()
        store = AccountingStore(db_path=str(new_dir / "sessions.db"), legacy_dir=str(legacy_dir))
        assert store.get_sessions() == []
