"""Abstract store interface.

The session controller, remediation loop and commit manager depend on
BaseStore, never on a concrete backend. Public write methods hold the
per-session lock so two threads never interleave writes for one session;
backends only implement the raw `_insert_*` / `_replace_*` hooks.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from pydantic import BaseModel

from sloppy.state import Commit, Issue, IssueStatus, IssueType, Session, SessionStatus


class StoreError(Exception):
    pass


class IssueFilter(BaseModel):
    session_id: str | None = None
    status: IssueStatus | list[IssueStatus] | None = None
    type: IssueType | None = None
    file_path: str | None = None

    def matches(self, issue: Issue) -> bool:
        if self.session_id is not None and issue.session_id != self.session_id:
            return False
        if self.status is not None:
            wanted = self.status if isinstance(self.status, list) else [self.status]
            if issue.status not in wanted:
                return False
        if self.type is not None and issue.type != self.type:
            return False
        if self.file_path is not None and issue.file_path != self.file_path:
            return False
        return True


class BaseStore(ABC):
    """Pluggable persistence for sessions, issues and commits."""

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def session_lock(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.RLock())
        with lock:
            yield

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self.session_lock(session.id):
            self._insert_session(session)
        return session

    def update_session(self, session: Session) -> Session:
        with self.session_lock(session.id):
            session.updated_at = datetime.now(timezone.utc)
            self._replace_session(session)
        return session

    @abstractmethod
    def get_session(self, session_id: str) -> Session | None:
        """Return the session, or None if it does not exist."""

    @abstractmethod
    def list_sessions(self, status: SessionStatus | None = None) -> list[Session]:
        """Sessions, newest first."""

    # -- issues -------------------------------------------------------------

    def create_issue(self, issue: Issue) -> Issue:
        with self.session_lock(issue.session_id):
            self._insert_issue(issue)
        return issue

    def update_issue(self, issue: Issue) -> Issue:
        with self.session_lock(issue.session_id):
            self._replace_issue(issue)
        return issue

    def claim_issue(self, issue_id: str) -> Issue | None:
        """Atomically move a PENDING issue to IN_PROGRESS.

        Returns the claimed issue, or None when it is missing or already
        claimed by someone else.
        """
        current = self.get_issue(issue_id)
        if current is None:
            return None
        with self.session_lock(current.session_id):
            issue = self.get_issue(issue_id)
            if issue is None or issue.status != IssueStatus.PENDING:
                return None
            issue.transition(IssueStatus.IN_PROGRESS)
            self._replace_issue(issue)
        return issue

    @abstractmethod
    def get_issue(self, issue_id: str) -> Issue | None:
        """Return the issue, or None if it does not exist."""

    @abstractmethod
    def list_issues(self, filter: IssueFilter | None = None) -> list[Issue]:
        """Issues matching the filter, in creation order."""

    # -- commits ------------------------------------------------------------

    def create_commit(self, commit: Commit) -> Commit:
        with self.session_lock(commit.session_id):
            self._insert_commit(commit)
        return commit

    def mark_reverted(self, commit_id: str, reason: str, revert_hash: str | None = None) -> Commit:
        """Flag a commit as reverted. The reason is mandatory."""
        if not reason or not reason.strip():
            raise StoreError("A revert reason is required")
        current = self.get_commit(commit_id)
        if current is None:
            raise StoreError(f"Commit not found: {commit_id}")
        with self.session_lock(current.session_id):
            commit = self.get_commit(commit_id)
            if commit.reverted:
                raise StoreError(f"Commit already reverted: {commit.hash}")
            commit.reverted = True
            commit.revert_reason = reason.strip()
            commit.revert_hash = revert_hash
            commit.reverted_at = datetime.now(timezone.utc)
            self._replace_commit(commit)
        return commit

    @abstractmethod
    def get_commit(self, commit_id: str) -> Commit | None:
        """Look up a commit by id or by (possibly abbreviated) git hash."""

    @abstractmethod
    def list_commits(self, session_id: str) -> list[Commit]:
        """Commits of a session, oldest first."""

    # -- backend hooks ------------------------------------------------------

    @abstractmethod
    def _insert_session(self, session: Session) -> None: ...

    @abstractmethod
    def _replace_session(self, session: Session) -> None: ...

    @abstractmethod
    def _insert_issue(self, issue: Issue) -> None: ...

    @abstractmethod
    def _replace_issue(self, issue: Issue) -> None: ...

    @abstractmethod
    def _insert_commit(self, commit: Commit) -> None: ...

    @abstractmethod
    def _replace_commit(self, commit: Commit) -> None: ...

    def close(self) -> None:
        """Release any resources held by the store.

        Default is a no-op so callers can always call close() safely.
        """


def open_store(db_path: str | None = None) -> BaseStore:
    """SQLite when a path is given, otherwise an in-memory store."""
    if db_path:
        from sloppy.store.sqlite import SQLiteStore
        return SQLiteStore(db_path)
    from sloppy.store.memory import MemoryStore
    return MemoryStore()
