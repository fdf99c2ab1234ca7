"""MemoryStore: dict-backed store for tests and one-shot scans."""

from __future__ import annotations

import threading

from sloppy.state import Commit, Issue, Session, SessionStatus
from sloppy.store import BaseStore, IssueFilter, StoreError


class MemoryStore(BaseStore):
    """Keeps every record in process memory. Reads hand out copies."""

    def __init__(self):
        super().__init__()
        self._sessions: dict[str, Session] = {}
        self._issues: dict[str, Issue] = {}
        self._commits: dict[str, Commit] = {}
        self._data_lock = threading.Lock()

    def get_session(self, session_id: str) -> Session | None:
        with self._data_lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def list_sessions(self, status: SessionStatus | None = None) -> list[Session]:
        with self._data_lock:
            sessions = [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if status is None or s.status == status
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def get_issue(self, issue_id: str) -> Issue | None:
        with self._data_lock:
            issue = self._issues.get(issue_id)
            return issue.model_copy(deep=True) if issue else None

    def list_issues(self, filter: IssueFilter | None = None) -> list[Issue]:
        filter = filter or IssueFilter()
        with self._data_lock:
            return [i.model_copy(deep=True) for i in self._issues.values() if filter.matches(i)]

    def get_commit(self, commit_id: str) -> Commit | None:
        with self._data_lock:
            commit = self._commits.get(commit_id)
            if commit is None and len(commit_id) >= 7:
                commit = next((c for c in self._commits.values() if c.hash.startswith(commit_id)), None)
            return commit.model_copy(deep=True) if commit else None

    def list_commits(self, session_id: str) -> list[Commit]:
        with self._data_lock:
            commits = [c.model_copy(deep=True) for c in self._commits.values() if c.session_id == session_id]
        return sorted(commits, key=lambda c: c.created_at)

    # -- hooks --------------------------------------------------------------

    def _insert_session(self, session: Session) -> None:
        with self._data_lock:
            if session.id in self._sessions:
                raise StoreError(f"Session already exists: {session.id}")
            self._sessions[session.id] = session.model_copy(deep=True)

    def _replace_session(self, session: Session) -> None:
        with self._data_lock:
            if session.id not in self._sessions:
                raise StoreError(f"Session not found: {session.id}")
            self._sessions[session.id] = session.model_copy(deep=True)

    def _insert_issue(self, issue: Issue) -> None:
        with self._data_lock:
            if issue.session_id not in self._sessions:
                raise StoreError(f"Session not found: {issue.session_id}")
            self._issues[issue.id] = issue.model_copy(deep=True)

    def _replace_issue(self, issue: Issue) -> None:
        with self._data_lock:
            if issue.id not in self._issues:
                raise StoreError(f"Issue not found: {issue.id}")
            self._issues[issue.id] = issue.model_copy(deep=True)

    def _insert_commit(self, commit: Commit) -> None:
        with self._data_lock:
            self._commits[commit.id] = commit.model_copy(deep=True)

    def _replace_commit(self, commit: Commit) -> None:
        with self._data_lock:
            if commit.id not in self._commits:
                raise StoreError(f"Commit not found: {commit.id}")
            self._commits[commit.id] = commit.model_copy(deep=True)
