"""SQLiteStore: local file-based store used by the CLI.

Schema:
  sessions  one row per session
  issues    one row per logical finding, indexed by session and status
  commits   one row per fix commit, append-only apart from revert flags

Each row keeps its full record as JSON in `data`; the other columns
exist only to index and filter.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from sloppy.state import Commit, Issue, Session, SessionStatus
from sloppy.store import BaseStore, IssueFilter, StoreError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    status      TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    data        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS issues (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT UNIQUE NOT NULL,
    session_id  TEXT NOT NULL REFERENCES sessions (id),
    status      TEXT NOT NULL,
    type        TEXT NOT NULL,
    file_path   TEXT NOT NULL,
    data        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_issues_session ON issues (session_id, status);
CREATE TABLE IF NOT EXISTS commits (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT UNIQUE NOT NULL,
    session_id  TEXT NOT NULL REFERENCES sessions (id),
    hash        TEXT NOT NULL,
    data        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_commits_session ON commits (session_id);
CREATE INDEX IF NOT EXISTS idx_commits_hash ON commits (hash);
"""


class SQLiteStore(BaseStore):
    """Stores sessions, issues and commits in a local SQLite database file."""

    def __init__(self, db_path: str | Path = ".sloppy/sloppy.db"):
        super().__init__()
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn_lock = threading.Lock()
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._conn_lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"SQLite error: {e}") from e
        return rows

    # -- reads --------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        rows = self._execute("SELECT data FROM sessions WHERE id = ?", (session_id,))
        return Session.model_validate_json(rows[0]["data"]) if rows else None

    def list_sessions(self, status: SessionStatus | None = None) -> list[Session]:
        if status is not None:
            rows = self._execute(
                "SELECT data FROM sessions WHERE status = ? ORDER BY created_at DESC", (status.value,)
            )
        else:
            rows = self._execute("SELECT data FROM sessions ORDER BY created_at DESC")
        return [Session.model_validate_json(r["data"]) for r in rows]

    def get_issue(self, issue_id: str) -> Issue | None:
        rows = self._execute("SELECT data FROM issues WHERE id = ?", (issue_id,))
        return Issue.model_validate_json(rows[0]["data"]) if rows else None

    def list_issues(self, filter: IssueFilter | None = None) -> list[Issue]:
        filter = filter or IssueFilter()
        clauses: list[str] = []
        params: list[str] = []
        if filter.session_id is not None:
            clauses.append("session_id = ?")
            params.append(filter.session_id)
        if filter.type is not None:
            clauses.append("type = ?")
            params.append(filter.type.value)
        if filter.file_path is not None:
            clauses.append("file_path = ?")
            params.append(filter.file_path)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(f"SELECT data FROM issues{where} ORDER BY seq", tuple(params))
        issues = [Issue.model_validate_json(r["data"]) for r in rows]
        return [i for i in issues if filter.matches(i)]

    def get_commit(self, commit_id: str) -> Commit | None:
        rows = self._execute("SELECT data FROM commits WHERE id = ?", (commit_id,))
        if not rows and len(commit_id) >= 7:
            rows = self._execute(
                "SELECT data FROM commits WHERE hash LIKE ? ORDER BY seq LIMIT 1", (f"{commit_id}%",)
            )
        return Commit.model_validate_json(rows[0]["data"]) if rows else None

    def list_commits(self, session_id: str) -> list[Commit]:
        rows = self._execute("SELECT data FROM commits WHERE session_id = ? ORDER BY seq", (session_id,))
        return [Commit.model_validate_json(r["data"]) for r in rows]

    # -- hooks --------------------------------------------------------------

    def _insert_session(self, session: Session) -> None:
        self._execute(
            "INSERT INTO sessions (id, status, created_at, data) VALUES (?, ?, ?, ?)",
            (session.id, session.status.value, session.created_at.isoformat(), session.model_dump_json()),
        )

    def _replace_session(self, session: Session) -> None:
        self._execute(
            "UPDATE sessions SET status = ?, data = ? WHERE id = ?",
            (session.status.value, session.model_dump_json(), session.id),
        )

    def _insert_issue(self, issue: Issue) -> None:
        self._execute(
            "INSERT INTO issues (id, session_id, status, type, file_path, data) VALUES (?, ?, ?, ?, ?, ?)",
            (
                issue.id,
                issue.session_id,
                issue.status.value,
                issue.type.value,
                issue.file_path,
                issue.model_dump_json(),
            ),
        )

    def _replace_issue(self, issue: Issue) -> None:
        self._execute(
            "UPDATE issues SET status = ?, data = ? WHERE id = ?",
            (issue.status.value, issue.model_dump_json(), issue.id),
        )

    def _insert_commit(self, commit: Commit) -> None:
        self._execute(
            "INSERT INTO commits (id, session_id, hash, data) VALUES (?, ?, ?, ?)",
            (commit.id, commit.session_id, commit.hash, commit.model_dump_json()),
        )

    def _replace_commit(self, commit: Commit) -> None:
        self._execute(
            "UPDATE commits SET data = ? WHERE id = ?",
            (commit.model_dump_json(), commit.id),
        )

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()
