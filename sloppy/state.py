"""
SLOPPY State: the entities every component agrees on.

Session, Issue and Commit are pydantic models so they can be persisted
as JSON by any store. Lifecycle rules live on the models themselves:
callers move an Issue or Session only through `transition()`, which
refuses moves the lifecycle does not allow.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

class IssueType(str, Enum):
    STUB = "stub"
    DUPLICATE = "duplicate"
    BUG = "bug"
    TYPE_ERROR = "type_error"
    LINT_ERROR = "lint_error"
    MISSING_TEST = "missing_test"
    DEAD_CODE = "dead_code"
    SECURITY = "security"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class Category(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"


class IssueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    TIMEOUT = "timeout"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class InvalidTransitionError(Exception):
    """A lifecycle move the state machine does not allow."""


ISSUE_TRANSITIONS: dict[IssueStatus, set[IssueStatus]] = {
    IssueStatus.PENDING: {IssueStatus.IN_PROGRESS},
    IssueStatus.IN_PROGRESS: {
        IssueStatus.RESOLVED,
        IssueStatus.FAILED,
        IssueStatus.SKIPPED,
        IssueStatus.PENDING,
    },
    IssueStatus.RESOLVED: set(),
    IssueStatus.FAILED: set(),
    IssueStatus.SKIPPED: set(),
}

SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.STOPPED},
    SessionStatus.RUNNING: {
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.STOPPED,
        SessionStatus.TIMEOUT,
    },
    SessionStatus.PAUSED: {SessionStatus.RUNNING, SessionStatus.STOPPED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.STOPPED: set(),
    SessionStatus.TIMEOUT: set(),
}

TERMINAL_SESSION_STATES = {
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.STOPPED,
    SessionStatus.TIMEOUT,
}


# ---------------------------------------------------------------------------
# Findings and Issues
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    """Raw analyzer output, not yet bound to a session."""
    type: IssueType
    severity: Severity = Severity.MEDIUM
    category: Category = Category.WARNING
    source: str = ""
    file_path: str
    line: int = 1
    end_line: int | None = None
    column: int | None = None
    end_column: int | None = None
    message: str
    code_excerpt: str = ""

    @property
    def last_line(self) -> int:
        return self.end_line if self.end_line is not None else self.line


def ranges_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start <= b_end and b_start <= a_end


def same_finding(a: Finding | Issue, b: Finding | Issue) -> bool:
    """Two records describe the same logical defect."""
    return (
        a.file_path == b.file_path
        and a.type == b.type
        and ranges_overlap(a.line, a.last_line, b.line, b.last_line)
    )


class Issue(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    type: IssueType
    severity: Severity
    category: Category = Category.WARNING
    source: str = ""
    file_path: str
    line: int = 1
    end_line: int | None = None
    column: int | None = None
    end_column: int | None = None
    message: str
    code_excerpt: str = ""
    status: IssueStatus = IssueStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def last_line(self) -> int:
        return self.end_line if self.end_line is not None else self.line

    @classmethod
    def from_finding(cls, session_id: str, finding: Finding) -> "Issue":
        return cls(session_id=session_id, **finding.model_dump())

    def transition(self, new_status: IssueStatus, error: str | None = None) -> None:
        if new_status not in ISSUE_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Issue {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status
        if error is not None:
            self.last_error = error
        self.updated_at = _now()

    def record_failure(self, error: str, max_retries: int) -> None:
        """Close out a failed attempt: back to PENDING while retries remain."""
        if self.retry_count >= max_retries:
            self.transition(IssueStatus.FAILED, error)
        else:
            self.retry_count += 1
            self.transition(IssueStatus.PENDING, error)

    def absorb(self, finding: Finding) -> None:
        """Merge a re-detected finding; lifecycle fields are left alone."""
        if finding.severity.rank > self.severity.rank:
            self.severity = finding.severity
            self.message = finding.message
            self.category = finding.category
            self.source = finding.source
        if finding.code_excerpt:
            self.code_excerpt = finding.code_excerpt
        self.line = min(self.line, finding.line)
        if finding.end_line is not None or self.end_line is not None:
            self.end_line = max(self.last_line, finding.last_line)
        self.updated_at = _now()


def processing_order(issue: Issue) -> tuple:
    """Severity descending, then path, then line."""
    return (-issue.severity.rank, issue.file_path, issue.line, issue.type.value)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionConfig(BaseModel):
    """Per-session snapshot of the knobs that shape a run."""
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_retries: int = Field(default=3, ge=0)
    max_turns: int = Field(default=12, ge=1)
    timeout_minutes: float = Field(default=60, gt=0)
    checkpoint_every: int = Field(default=5, ge=0)
    analysis_types: list[IssueType] = Field(default_factory=lambda: list(IssueType))
    exclude: list[str] = Field(default_factory=list)
    test_command: str | None = None
    lint_command: str | None = None
    build_command: str | None = None

    @property
    def litellm_model(self) -> str:
        if "/" in self.model:
            return self.model
        return f"{self.provider}/{self.model}"


class SessionCounters(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    resolved: int = 0
    failed: int = 0
    skipped: int = 0

    @classmethod
    def from_issues(cls, issues: list[Issue]) -> "SessionCounters":
        counts = {status: 0 for status in IssueStatus}
        for issue in issues:
            counts[issue.status] += 1
        return cls(
            total=len(issues),
            pending=counts[IssueStatus.PENDING],
            in_progress=counts[IssueStatus.IN_PROGRESS],
            resolved=counts[IssueStatus.RESOLVED],
            failed=counts[IssueStatus.FAILED],
            skipped=counts[IssueStatus.SKIPPED],
        )


class Checkpoint(BaseModel):
    counters: SessionCounters
    processed: int = 0
    last_issue_id: str | None = None
    head: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    repository_path: str
    branch: str
    cleaning_branch: str = ""
    status: SessionStatus = SessionStatus.PENDING
    config: SessionConfig = Field(default_factory=SessionConfig)
    counters: SessionCounters = Field(default_factory=SessionCounters)
    checkpoint: Checkpoint | None = None
    active_seconds: float = 0.0
    error: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _default_cleaning_branch(self) -> "Session":
        if not self.cleaning_branch:
            self.cleaning_branch = f"sloppy/{self.id[:8]}"
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATES

    def transition(self, new_status: SessionStatus, error: str | None = None) -> None:
        if new_status not in SESSION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Session {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status
        now = _now()
        if new_status == SessionStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_SESSION_STATES:
            self.completed_at = now
        if error is not None:
            self.error = error
        self.updated_at = now


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------

class FileChange(BaseModel):
    path: str
    change_type: ChangeType = ChangeType.MODIFIED
    lines_added: int = 0
    lines_removed: int = 0
    old_path: str | None = None


class Commit(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    issue_id: str | None = None
    hash: str
    message: str
    diff_content: str = ""
    files_changed: list[FileChange] = Field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0
    author: str = ""
    author_email: str = ""
    reverted: bool = False
    reverted_at: datetime | None = None
    revert_hash: str | None = None
    revert_reason: str | None = None
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _reverted_needs_reason(self) -> "Commit":
        if self.reverted and not (self.revert_reason or "").strip():
            raise ValueError("a reverted commit must carry a revert_reason")
        if self.revert_hash and not self.reverted:
            raise ValueError("revert_hash is only valid on a reverted commit")
        return self

    def summary(self) -> dict[str, Any]:
        return {
            "hash": self.hash[:10],
            "message": self.message.splitlines()[0] if self.message else "",
            "files": len(self.files_changed),
            "+": self.lines_added,
            "-": self.lines_removed,
            "reverted": self.reverted,
        }
