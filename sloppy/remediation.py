"""
SLOPPY Remediation Loop

One attempt at one issue:

  claim -> actionable? -> fixer tool loop -> verify -> re-analyze
        -> commit -> RESOLVED

A failed check (verification or re-analysis) gets one corrective retry.

A failed attempt goes back to PENDING while retries remain and ends
FAILED once they are spent. A stop or timeout abandons the attempt: the
working copy is reset and the issue returns to PENDING untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger

from sloppy.agents import AgentContext
from sloppy.agents.fixer import EXHAUSTED, SKIPPED, FixerAgent, Phase, prepare_file_context
from sloppy.cancellation import AttemptAbandoned, CancelToken
from sloppy.commits import CommitManager, CommitOptions, format_commit_message
from sloppy.config_loader import SloppyConfig
from sloppy.event_bus import EventBus
from sloppy.event_bus import bus as default_bus
from sloppy.reanalysis import ReAnalysis, ReAnalyzer
from sloppy.router import TRANSIENT_ERRORS, LLMCapability
from sloppy.snapshot import BrowserError, FileBrowser
from sloppy.state import Commit, Finding, Issue, IssueStatus, Session
from sloppy.store import BaseStore
from sloppy.verification import VerificationResult
from sloppy.workspace import Workspace
from sloppy.workspace.tools import ToolExecutor


class Outcome(str, Enum):
    RESOLVED = "resolved"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNCLAIMED = "unclaimed"


@dataclass
class AttemptReport:
    issue: Issue
    outcome: Outcome
    error: str | None = None
    commit: Commit | None = None
    turns: int = 0
    tokens_used: int = 0


class VerifierLike(Protocol):
    def run(self, working_dir, cancel: CancelToken | None = None) -> VerificationResult:
        ...


class RemediationLoop:
    """Runs remediation attempts for one session inside its worktree."""

    def __init__(
        self,
        store: BaseStore,
        llm: LLMCapability,
        workspace: Workspace,
        commits: CommitManager,
        verifier: VerifierLike,
        session: Session,
        config: SloppyConfig | None = None,
        cancel: CancelToken | None = None,
        event_bus: EventBus | None = None,
        reanalyzer: ReAnalyzer | None = None,
    ):
        self.store = store
        self.workspace = workspace
        self.commits = commits
        self.verifier = verifier
        self.session = session
        self.config = config or SloppyConfig()
        self.cancel = cancel
        self.bus = event_bus or default_bus
        self.reanalyzer = reanalyzer
        self.agent = FixerAgent(llm, max_turns=session.config.max_turns)

    @property
    def max_retries(self) -> int:
        return self.session.config.max_retries

    def _emit(self, event_type: str, issue: Issue, **payload) -> None:
        self.bus.emit(
            event_type,
            source="remediation",
            session_id=self.session.id,
            payload={"issue_id": issue.id, "file_path": issue.file_path, "status": issue.status.value, **payload},
        )

    def _browser(self) -> FileBrowser:
        tools = self.config.tools
        return FileBrowser(
            self.workspace.path,
            max_depth=tools.max_depth,
            max_file_bytes=tools.max_file_bytes,
        )

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def process(self, issue: Issue) -> AttemptReport:
        claimed = self.store.claim_issue(issue.id)
        if claimed is None:
            logger.debug(f"[LOOP] Issue {issue.id[:8]} was not claimable")
            return AttemptReport(issue, Outcome.UNCLAIMED)
        issue = claimed
        logger.info(f"[LOOP] {issue.id[:8]} [{issue.type.value}/{issue.severity.value}] {issue.file_path}:{issue.line}")
        self._emit("issue.started", issue, attempt=issue.retry_count + 1)

        browser = self._browser()
        reason = self._not_actionable(browser, issue)
        if reason:
            return self._skip(issue, reason)

        tools = self.config.tools
        executor = ToolExecutor(
            browser,
            command_timeout=tools.command_timeout_seconds,
            allowed_commands=tools.allowed_commands,
            blocked_patterns=tools.blocked_patterns,
            max_output_chars=tools.max_output_chars,
            cancel=self.cancel,
        )

        try:
            return self._attempt(issue, browser, executor)
        except AttemptAbandoned as e:
            self._abandon(issue, f"Attempt abandoned: {e.reason}")
            raise
        except TRANSIENT_ERRORS as e:
            return self._fail(issue, f"Model call failed: {e}")
        except Exception as e:
            # Infrastructure failure: leave nothing half-done, then let the controller fail the session.
            self._abandon(issue, f"Attempt interrupted: {e}")
            raise

    # ------------------------------------------------------------------ #
    # Attempt
    # ------------------------------------------------------------------ #

    def _not_actionable(self, browser: FileBrowser, issue: Issue) -> str | None:
        if not browser.exists(issue.file_path):
            return f"{issue.file_path} no longer exists"
        try:
            line_count = len(browser.read(issue.file_path).splitlines())
        except BrowserError as e:
            return f"{issue.file_path} cannot be read: {e}"
        if issue.line > max(line_count, 1):
            return f"Line {issue.line} is past the end of {issue.file_path} ({line_count} lines)"
        return None

    def _reanalyze(self, issue: Issue, baseline: list[Finding] | None) -> ReAnalysis:
        if self.reanalyzer is None:
            return ReAnalysis(skipped=True)
        recheck = self.reanalyzer.check(self.workspace.path, issue, baseline)
        if not recheck.skipped:
            self._emit(
                "issue.reanalyzed",
                issue,
                passed=recheck.passed,
                issue_remains=recheck.issue_remains,
                new_findings=len(recheck.new_findings),
            )
        return recheck

    def _attempt(self, issue: Issue, browser: FileBrowser, executor: ToolExecutor) -> AttemptReport:
        context = AgentContext(
            session_id=self.session.id,
            issue=issue,
            repo_path=self.session.repository_path,
            working_dir=str(self.workspace.path),
            file_context=prepare_file_context(
                browser,
                issue.file_path,
                issue.line,
                issue.last_line,
                self.config.limits.context_token_budget,
            ),
        )
        baseline = self.reanalyzer.findings(self.workspace.path, issue) if self.reanalyzer else None
        conversation = self.agent.start(context)
        corrected = False

        while True:
            conversation = self.agent.run(conversation, executor, self.cancel)

            if conversation.outcome == SKIPPED:
                self.workspace.discard_changes()
                return self._skip(issue, conversation.skip_reason or "Not actionable", conversation.turns)
            if conversation.outcome == EXHAUSTED:
                return self._fail(issue, f"Turn budget of {conversation.max_turns} exhausted without a fix", conversation.turns)
            if self.workspace.is_clean():
                return self._fail(issue, "Fixer finished without changing any file", conversation.turns)

            if self.cancel is not None:
                self.cancel.check()
            verification = self.verifier.run(self.workspace.path, self.cancel)
            self._emit(
                "issue.verified",
                issue,
                passed=verification.passed,
                steps=[s.name for s in verification.steps],
                corrective=corrected,
            )
            if verification.passed:
                recheck = self._reanalyze(issue, baseline)
                if recheck.passed:
                    break
                failure, feedback = "Re-analysis rejected the fix", recheck.feedback(issue)
            else:
                failure, feedback = "Verification failed", verification.feedback()

            self.workspace.discard_changes()
            if corrected:
                return self._fail(issue, f"{failure} after correction. {feedback[:500]}", conversation.turns)
            corrected = True
            logger.info(f"[LOOP] {issue.id[:8]} {failure.lower()}, asking for a correction")
            self.agent.correct(conversation, feedback)

        if self.cancel is not None:
            self.cancel.check()

        message = format_commit_message(
            self.config.commit.prefix,
            issue.type.value,
            conversation.commit_message or issue.message,
            body=conversation.summary,
            issue_id=issue.id,
        )
        result = self.commits.commit(CommitOptions(session_id=self.session.id, issue_id=issue.id, message=message))
        if not result.success:
            self.workspace.discard_changes()
            return self._fail(issue, f"Commit failed: {result.error}", conversation.turns)

        conversation.phase = Phase.DONE
        issue.transition(IssueStatus.RESOLVED)
        issue.last_error = None
        self.store.update_issue(issue)
        self._emit("issue.resolved", issue, commit=result.commit.hash, turns=conversation.turns)
        logger.info(f"[LOOP] {issue.id[:8]} resolved in {conversation.turns} turn(s): {result.commit.hash[:10]}")
        return AttemptReport(
            issue,
            Outcome.RESOLVED,
            commit=result.commit,
            turns=conversation.turns,
            tokens_used=conversation.tokens_used,
        )

    # ------------------------------------------------------------------ #
    # Endings
    # ------------------------------------------------------------------ #

    def _skip(self, issue: Issue, reason: str, turns: int = 0) -> AttemptReport:
        issue.transition(IssueStatus.SKIPPED, reason)
        self.store.update_issue(issue)
        self._emit("issue.skipped", issue, reason=reason)
        logger.info(f"[LOOP] {issue.id[:8]} skipped: {reason}")
        return AttemptReport(issue, Outcome.SKIPPED, error=reason, turns=turns)

    def _fail(self, issue: Issue, error: str, turns: int = 0) -> AttemptReport:
        self.workspace.discard_changes()
        issue.record_failure(error, self.max_retries)
        self.store.update_issue(issue)
        self._emit("issue.failed", issue, error=error, retry_count=issue.retry_count)
        logger.warning(
            f"[LOOP] {issue.id[:8]} attempt failed ({issue.status.value}, "
            f"retry {issue.retry_count}/{self.max_retries}): {error}"
        )
        return AttemptReport(issue, Outcome.FAILED, error=error, turns=turns)

    def _abandon(self, issue: Issue, reason: str) -> None:
        self.workspace.discard_changes()
        issue.transition(IssueStatus.PENDING, reason)
        self.store.update_issue(issue)
        self._emit("issue.abandoned", issue, reason=reason)
        logger.info(f"[LOOP] {issue.id[:8]} back to pending: {reason}")
