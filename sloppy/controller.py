"""
SLOPPY Controller: the session state machine.

It is NOT smart. It is deterministic.

Responsibilities:
  - Check out the cleaning branch in an isolated worktree
  - Scan and merge findings into the session's issue backlog
  - Hand pending issues to the remediation loop, one at a time,
    highest severity first
  - Keep counters current and checkpoint progress
  - Enforce pause, stop and the session timeout
  - Fail the session loudly on infrastructure errors

It never writes code. It only coordinates.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sloppy.cancellation import STOPPED, AttemptAbandoned, CancelToken
from sloppy.commits import CommitManager
from sloppy.config_loader import AnalysisConfig, SloppyConfig, load_config
from sloppy.event_bus import EventBus
from sloppy.event_bus import bus as default_bus
from sloppy.identity import __tagline__
from sloppy.orchestrator import AnalysisOrchestrator, AnalysisProgress, AnalysisResult
from sloppy.plugins import PluginRegistry, default_registry
from sloppy.reanalysis import ReAnalyzer
from sloppy.remediation import RemediationLoop, VerifierLike
from sloppy.router import LLMCapability, Router
from sloppy.state import (
    Checkpoint,
    Issue,
    IssueStatus,
    InvalidTransitionError,
    Session,
    SessionCounters,
    SessionStatus,
    processing_order,
    same_finding,
)
from sloppy.store import BaseStore, IssueFilter, StoreError
from sloppy.verification import Verifier
from sloppy.workspace import Workspace, current_branch, is_git_repo

console = Console()


class InfrastructureError(Exception):
    """The session cannot go on: repository, workspace, store, budget or model failure."""


class SessionController:
    def __init__(
        self,
        store: BaseStore,
        session: Session,
        config: SloppyConfig | None = None,
        llm: LLMCapability | None = None,
        registry: PluginRegistry | None = None,
        verifier: VerifierLike | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.session = session
        self.config = config or load_config(Path(session.repository_path))
        self.repo_path = Path(session.repository_path)
        self.bus = event_bus or default_bus
        self.clock = clock
        self._llm = llm
        self._registry = registry
        self._verifier = verifier

        self.workspace = Workspace(
            self.repo_path,
            session.id,
            session.cleaning_branch,
            self.config.workspace.worktree_dir,
        )
        self._cancel: CancelToken | None = None
        self._pause_requested = threading.Event()
        self._stop_requested = threading.Event()
        self._active = threading.Lock()
        self._run_started: float | None = None
        self._processed = session.checkpoint.processed if session.checkpoint else 0

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def create_session(
        cls,
        store: BaseStore,
        repository_path: Path | str,
        config: SloppyConfig | None = None,
        branch: str | None = None,
        **kwargs,
    ) -> "SessionController":
        """Record a new PENDING session for a repository checkout."""
        repo = Path(repository_path).resolve()
        config = config or load_config(repo)
        if branch is None:
            branch = current_branch(repo) if is_git_repo(repo) else "HEAD"
        session = Session(repository_path=str(repo), branch=branch, config=config.session_config(repo))
        session.cleaning_branch = f"{config.workspace.branch_prefix}{session.id[:8]}"
        store.create_session(session)
        logger.info(f"[SESSION] Created {session.id} for {repo} on {branch}")
        return cls(store, session, config=config, **kwargs)

    @classmethod
    def load(cls, store: BaseStore, session_id: str, config: SloppyConfig | None = None, **kwargs) -> "SessionController":
        session = store.get_session(session_id)
        if session is None:
            raise InfrastructureError(f"Session not found: {session_id}")
        return cls(store, session, config=config, **kwargs)

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    def run(self) -> Session:
        """Scan the repository and work through the backlog."""
        if self.session.status != SessionStatus.PENDING:
            raise InvalidTransitionError(
                f"Session {self.session.id} is {self.session.status.value}; only a pending session can run"
            )
        return self._drive(scan=True)

    def resume(self) -> Session:
        """Continue a paused (or interrupted) session without re-scanning."""
        if self.session.status not in (SessionStatus.PAUSED, SessionStatus.RUNNING):
            raise InvalidTransitionError(
                f"Session {self.session.id} is {self.session.status.value}; only a paused session can resume"
            )
        return self._drive(scan=False)

    def pause(self) -> None:
        """Ask a running session to pause after the issue in flight."""
        self._pause_requested.set()
        logger.info(f"[SESSION] Pause requested for {self.session.id}")

    def stop(self) -> None:
        """Abandon in-flight work and end the session as STOPPED."""
        self._stop_requested.set()
        if self._cancel is not None:
            self._cancel.stop()
        logger.info(f"[SESSION] Stop requested for {self.session.id}")

        if self._active.acquire(blocking=False):
            try:
                if self.session.status in (SessionStatus.PENDING, SessionStatus.PAUSED):
                    self._finish(SessionStatus.STOPPED)
            finally:
                self._active.release()

    # ------------------------------------------------------------------ #
    # Driving loop
    # ------------------------------------------------------------------ #

    def _drive(self, scan: bool) -> Session:
        if not self._active.acquire(blocking=False):
            raise InvalidTransitionError(f"Session {self.session.id} is already running")
        try:
            self._pause_requested.clear()
            self._start()
            try:
                self._prepare_workspace()
                self._release_orphans()
                if scan:
                    self._scan()
                self._process()
            except Exception as e:
                self._fail(e)
                if isinstance(e, InfrastructureError):
                    raise
                raise InfrastructureError(f"{type(e).__name__}: {e}") from e
            return self.session
        finally:
            self._active.release()

    def _start(self) -> None:
        if self.session.status != SessionStatus.RUNNING:
            self.session.transition(SessionStatus.RUNNING)
        self._run_started = self.clock()
        budget = self.session.config.timeout_minutes * 60 - self.session.active_seconds
        self._cancel = CancelToken(deadline=self._run_started + budget, clock=self.clock)
        if self._stop_requested.is_set():
            self._cancel.stop()
        self.store.update_session(self.session)
        self.bus.emit("session.started", "controller", {"status": self.session.status.value}, session_id=self.session.id)

        console.print(Panel(
            f"[bold green]Repository:[/] {self.session.repository_path}\n"
            f"[bold]Session:[/] {self.session.id}  |  [bold]Branch:[/] {self.session.cleaning_branch}\n"
            f"[bold]Model:[/] {self.session.config.litellm_model}  |  "
            f"[bold]Retries:[/] {self.session.config.max_retries}  |  "
            f"[bold]Timeout:[/] {self.session.config.timeout_minutes:g}m",
            title="SLOPPY",
            subtitle=__tagline__,
            border_style="bright_green",
        ))

    def _prepare_workspace(self) -> None:
        if not self.repo_path.is_dir():
            raise InfrastructureError(f"Repository not found: {self.repo_path}")
        if not is_git_repo(self.repo_path):
            raise InfrastructureError(f"Not a git checkout: {self.repo_path}")
        self.workspace.create(self.session.branch)
        if not self.workspace.is_clean():
            self.workspace.discard_changes()

    def _release_orphans(self) -> None:
        """IN_PROGRESS issues left by a crashed run go back to PENDING."""
        orphans = self.store.list_issues(IssueFilter(session_id=self.session.id, status=IssueStatus.IN_PROGRESS))
        for issue in orphans:
            issue.transition(IssueStatus.PENDING, "Recovered from an interrupted run")
            self.store.update_issue(issue)
        if orphans:
            logger.info(f"[SESSION] Returned {len(orphans)} interrupted issue(s) to pending")

    # -- scan -------------------------------------------------------------

    def _analysis_config(self) -> AnalysisConfig:
        return self.config.analysis.model_copy(update={
            "types": list(self.session.config.analysis_types),
            "exclude": list(self.session.config.exclude),
        })

    def _analysis_registry(self) -> PluginRegistry:
        if self._registry is None:
            analysis = self.config.analysis
            self._registry = default_registry(
                [self.repo_path / d for d in analysis.plugin_dirs],
                analysis.disabled,
            )
        return self._registry

    def _scan(self) -> AnalysisResult:
        console.print("\n[bold dim][SCAN] Analyzing repository...[/]")
        analysis = self._analysis_config()
        orchestrator = AnalysisOrchestrator(
            self._analysis_registry(),
            max_depth=self.config.tools.max_depth,
            max_file_bytes=self.config.tools.max_file_bytes,
        )
        result = orchestrator.analyze(self.workspace.path, analysis, on_progress=self._on_progress)
        for warning in result.warnings:
            console.print(f"[yellow]Analyzer {warning.analyzer} failed: {warning.error}[/]")

        created, merged = self._merge_findings(result)
        console.print(
            f"  [dim]{len(result.findings)} findings in {result.files_scanned} files: "
            f"{created} new, {merged} merged into existing issues[/]"
        )
        self._refresh_counters()
        return result

    def _on_progress(self, progress: AnalysisProgress) -> None:
        self.bus.emit(f"scan.{progress.phase}", "orchestrator", progress.model_dump(), session_id=self.session.id)

    def _merge_findings(self, result: AnalysisResult) -> tuple[int, int]:
        existing = self.store.list_issues(IssueFilter(session_id=self.session.id))
        created = merged = 0
        for finding in result.findings:
            match = next((issue for issue in existing if same_finding(issue, finding)), None)
            if match is not None:
                match.absorb(finding)
                self.store.update_issue(match)
                merged += 1
                continue
            issue = Issue.from_finding(self.session.id, finding)
            self.store.create_issue(issue)
            existing.append(issue)
            created += 1
        return created, merged

    # -- processing --------------------------------------------------------

    def _next_pending(self) -> Issue | None:
        pending = self.store.list_issues(IssueFilter(session_id=self.session.id, status=IssueStatus.PENDING))
        if not pending:
            return None
        return min(pending, key=processing_order)

    def _build_loop(self) -> RemediationLoop:
        llm = self._llm or Router.from_config(self.config, self.session.config)
        verifier = self._verifier or Verifier(
            test_command=self.session.config.test_command,
            lint_command=self.session.config.lint_command,
            build_command=self.session.config.build_command,
            timeout=self.config.verification.timeout_seconds,
        )
        commits = CommitManager(
            self.store,
            self.workspace.path,
            author_name=self.config.commit.author_name,
            author_email=self.config.commit.author_email,
        )
        reanalyzer = None
        if self.config.verification.reanalyze:
            analysis = self._analysis_config()
            reanalyzer = ReAnalyzer(
                self._analysis_registry(),
                options=analysis.options,
                max_depth=self.config.tools.max_depth,
                max_file_bytes=self.config.tools.max_file_bytes,
                exclude=analysis.exclude,
            )
        return RemediationLoop(
            self.store,
            llm,
            self.workspace,
            commits,
            verifier,
            self.session,
            config=self.config,
            cancel=self._cancel,
            event_bus=self.bus,
            reanalyzer=reanalyzer,
        )

    def _process(self) -> None:
        loop = self._build_loop()
        every = self.session.config.checkpoint_every

        while True:
            reason = self._cancel.reason
            if reason is not None:
                self._finish(SessionStatus.STOPPED if reason == STOPPED else SessionStatus.TIMEOUT)
                return
            if self._pause_requested.is_set():
                self._finish(SessionStatus.PAUSED)
                return

            issue = self._next_pending()
            if issue is None:
                self._finish(SessionStatus.COMPLETED)
                return

            try:
                report = loop.process(issue)
            except AttemptAbandoned as e:
                self._finish(SessionStatus.STOPPED if e.reason == STOPPED else SessionStatus.TIMEOUT, issue.id)
                return

            self._processed += 1
            self._refresh_counters()
            console.print(
                f"  [{_OUTCOME_STYLE.get(report.outcome.value, 'white')}]{report.outcome.value:>9}[/] "
                f"{issue.file_path}:{issue.line} [dim]{issue.type.value}[/]"
            )
            if every and self._processed % every == 0:
                self._checkpoint(issue.id)

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #

    def _refresh_counters(self) -> SessionCounters:
        issues = self.store.list_issues(IssueFilter(session_id=self.session.id))
        self.session.counters = SessionCounters.from_issues(issues)
        self.store.update_session(self.session)
        return self.session.counters

    def _checkpoint(self, last_issue_id: str | None = None) -> Checkpoint:
        counters = self._refresh_counters()
        head = self.workspace.head() if self.workspace.exists else None
        previous = self.session.checkpoint
        checkpoint = Checkpoint(
            counters=counters,
            processed=self._processed,
            last_issue_id=last_issue_id or (previous.last_issue_id if previous else None),
            head=head,
        )
        self.session.checkpoint = checkpoint
        self.store.update_session(self.session)
        self.bus.emit("session.checkpoint", "controller", checkpoint.model_dump(mode="json"), session_id=self.session.id)
        logger.debug(f"[SESSION] Checkpoint after {self._processed} issue(s) at {head[:10] if head else '-'}")
        return checkpoint

    def _account_time(self) -> None:
        if self._run_started is not None:
            self.session.active_seconds += max(0.0, self.clock() - self._run_started)
            self._run_started = None

    def _finish(self, status: SessionStatus, last_issue_id: str | None = None) -> None:
        self._account_time()
        if self.workspace.exists and not self.workspace.is_clean():
            self.workspace.discard_changes()
        self._checkpoint(last_issue_id)
        self.session.transition(status)
        self.store.update_session(self.session)
        self.bus.emit(f"session.{status.value}", "controller", self.session.counters.model_dump(), session_id=self.session.id)
        if self.session.is_terminal and self.workspace.exists:
            self.workspace.cleanup()
        logger.info(f"[SESSION] {self.session.id} {status.value}")
        self._print_summary()

    def _fail(self, error: Exception) -> None:
        self._account_time()
        message = f"{type(error).__name__}: {error}"
        logger.error(f"[SESSION] {self.session.id} failed: {message}")
        console.print(f"[red]Session failed: {message}[/]")
        if self.session.status == SessionStatus.RUNNING:
            self.session.transition(SessionStatus.FAILED, error=message)
        try:
            self.store.update_session(self.session)
        except StoreError as e:
            logger.error(f"[SESSION] Could not record the failure: {e}")
        self.bus.emit("session.failed", "controller", {"error": message}, session_id=self.session.id)

    def _print_summary(self) -> None:
        c = self.session.counters
        table = Table(title=f"Session {self.session.id[:8]}: {self.session.status.value}", show_lines=False)
        table.add_column("Total", justify="right")
        table.add_column("Resolved", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Skipped", justify="right", style="yellow")
        table.add_column("Pending", justify="right", style="dim")
        table.add_row(str(c.total), str(c.resolved), str(c.failed), str(c.skipped), str(c.pending + c.in_progress))
        console.print(table)


_OUTCOME_STYLE = {
    "resolved": "green",
    "failed": "red",
    "skipped": "yellow",
    "unclaimed": "dim",
}
