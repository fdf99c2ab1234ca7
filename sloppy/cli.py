"""
SLOPPY CLI: The Interface

Sessions:
  1. sloppy scan --repo <path>                 (analyze only, nothing is stored)
  2. sloppy run --repo <path>                  (scan + remediate on a cleaning branch)
  3. sloppy resume <session> --repo <path>     (continue a paused session)
  4. sloppy revert <commit> --reason "..."     (undo a recorded fix)

Plus utilities:
  - sloppy sessions      (list recorded sessions)
  - sloppy plugins       (list analyzers)
  - sloppy status        (check config + API keys)
  - sloppy init <path>   (bootstrap .sloppy in a repo)
  - sloppy batch         (one session per repository, in parallel)
"""

from __future__ import annotations

import json
import shutil
import threading
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sloppy.audit_logger import AuditLogger
from sloppy.commits import CommitManager, RevertOptions
from sloppy.config_loader import ConfigError, SloppyConfig, load_config, validate_api_keys
from sloppy.controller import InfrastructureError, SessionController
from sloppy.event_bus import bus
from sloppy.identity import BANNER, __codename__, __tagline__, __version__
from sloppy.orchestrator import AnalysisOrchestrator
from sloppy.parallel import run_sessions
from sloppy.plugins import default_registry
from sloppy.state import InvalidTransitionError, IssueType, Session, SessionStatus
from sloppy.store import BaseStore, IssueFilter, open_store
from sloppy.workspace import Workspace, WorkspaceError, is_git_repo

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".sloppy" / ".env")

app = typer.Typer(
    name="sloppy",
    help=f"{__codename__}: {__tagline__}\nFinds code-quality issues and fixes them on a revertible branch.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_COLOR = {
    SessionStatus.COMPLETED: "green",
    SessionStatus.PAUSED: "yellow",
    SessionStatus.RUNNING: "cyan",
    SessionStatus.PENDING: "dim",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__}: {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def scan(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    types: Optional[list[IssueType]] = typer.Option(None, "--type", help="Only report these issue types"),
    as_json: bool = typer.Option(False, "--json", help="Print findings as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Analyze a repository and print the merged findings."""
    _configure_logging(verbose)
    repo = _existing_repo(repo)
    config = _load_config(repo)

    analysis = config.analysis
    if types:
        analysis = analysis.model_copy(update={"types": list(types)})
    registry = default_registry([repo / d for d in analysis.plugin_dirs], analysis.disabled)
    orchestrator = AnalysisOrchestrator(
        registry,
        max_depth=config.tools.max_depth,
        max_file_bytes=config.tools.max_file_bytes,
    )
    result = orchestrator.analyze(repo, analysis)

    if as_json:
        print(json.dumps([f.model_dump(mode="json") for f in result.findings], indent=2))
        return

    table = Table(title=f"Findings in {repo.name}", border_style="cyan")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Location")
    table.add_column("Message")
    for f in result.findings:
        table.add_row(f.severity.value, f.type.value, f"{f.file_path}:{f.line}", f.message[:80])
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]Analyzer {warning.analyzer} failed: {warning.error}[/]")
    summary = result.summary()
    console.print(
        f"\n[bold]{summary['total']} issues[/] in {summary['files_scanned']} files "
        f"from {summary['analyzers']} analyzers ({summary['duration_ms']}ms)"
    )


@app.command()
def run(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Fixer model, e.g. 'gpt-4o'"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Model provider, e.g. 'openai'"),
    types: Optional[list[IssueType]] = typer.Option(None, "--type", help="Only fix these issue types"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries per issue"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Session timeout in minutes"),
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t", help="Test command (e.g. 'pytest -q')"),
    lint_cmd: Optional[str] = typer.Option(None, "--lint", help="Lint command"),
    build_cmd: Optional[str] = typer.Option(None, "--build", help="Build command"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Base branch (default: current)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Scan a repository and fix what it finds on a cleaning branch."""
    _print_banner()
    _configure_logging(verbose)
    repo = _existing_repo(repo)

    overrides: dict = {"routing": {}, "limits": {}, "analysis": {}, "verification": {}}
    if model:
        overrides["routing"]["fixer"] = model
    if provider:
        overrides["routing"]["provider"] = provider
    if max_retries is not None:
        overrides["limits"]["max_retries"] = max_retries
    if timeout is not None:
        overrides["limits"]["timeout_minutes"] = timeout
    if types:
        overrides["analysis"]["types"] = [t.value for t in types]
    for key, value in (("test_command", test_cmd), ("lint_command", lint_cmd), ("build_command", build_cmd)):
        if value:
            overrides["verification"][key] = value

    config = _load_config(repo, overrides)
    store = _open_store(repo, config)
    try:
        controller = SessionController.create_session(store, repo, config, branch=branch)
        session = _drive(controller, controller.run, repo, config)
    finally:
        store.close()
    _print_outcome(session)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Session id (or unique prefix)"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Continue a paused session where it left off."""
    _print_banner()
    _configure_logging(verbose)
    repo = _existing_repo(repo)
    config = _load_config(repo)
    store = _open_store(repo, config)
    try:
        session = _find_session(store, session_id)
        controller = SessionController(store, session, config=config)
        session = _drive(controller, controller.resume, repo, config)
    finally:
        store.close()
    _print_outcome(session)


@app.command()
def revert(
    commit_ref: str = typer.Argument(..., help="Commit id or hash prefix"),
    reason: str = typer.Option(..., "--reason", help="Why this fix is being undone"),
    hard: bool = typer.Option(False, "--hard", help="Reset the cleaning branch instead of adding a revert commit"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Undo a fix recorded by a session."""
    _configure_logging(verbose)
    repo = _existing_repo(repo)
    config = _load_config(repo)
    store = _open_store(repo, config)
    try:
        commit = store.get_commit(commit_ref)
        if commit is None:
            console.print(f"[red]Commit not found: {commit_ref}[/]")
            raise typer.Exit(1)
        session = store.get_session(commit.session_id)
        workspace = Workspace(repo, session.id, session.cleaning_branch, config.workspace.worktree_dir)
        existed = workspace.exists
        try:
            workspace.create(session.branch)
            manager = CommitManager(store, workspace.path, config.commit.author_name, config.commit.author_email)
            result = manager.revert(RevertOptions(commit_id=commit.id, reason=reason, create_revert_commit=not hard))
        except WorkspaceError as e:
            console.print(f"[red]Cannot check out {session.cleaning_branch}: {e}[/]")
            raise typer.Exit(1)
        finally:
            if not existed:
                workspace.cleanup()
    finally:
        store.close()

    if not result.success:
        console.print(f"[red]Revert failed: {result.error}[/]")
        raise typer.Exit(1)
    if result.revert_hash:
        console.print(f"[green]Reverted {commit.hash[:10]} with {result.revert_hash[:10]} on {session.cleaning_branch}[/]")
    else:
        console.print(f"[green]Reset {session.cleaning_branch}; {len(result.reverted_ids)} commit(s) discarded[/]")


@app.command()
def sessions(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    status_filter: Optional[SessionStatus] = typer.Option(None, "--status", help="Only sessions in this state"),
    show_issues: Optional[str] = typer.Option(None, "--issues", help="Show the issues of one session"),
):
    """List recorded sessions, or the issues of one of them."""
    repo = _existing_repo(repo)
    config = _load_config(repo)
    store = _open_store(repo, config)
    try:
        if show_issues:
            _print_issues(store, _find_session(store, show_issues))
            return
        table = Table(title="Sessions", border_style="cyan")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Branch")
        table.add_column("Resolved", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Pending", justify="right")
        table.add_column("Created")
        for s in store.list_sessions(status_filter):
            color = _STATUS_COLOR.get(s.status, "red")
            table.add_row(
                s.id[:8],
                f"[{color}]{s.status.value}[/]",
                s.cleaning_branch,
                str(s.counters.resolved),
                str(s.counters.failed),
                str(s.counters.pending),
                s.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
    finally:
        store.close()


@app.command()
def plugins(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
):
    """List built-in and external analyzers."""
    repo = _existing_repo(repo)
    config = _load_config(repo)
    registry = default_registry([repo / d for d in config.analysis.plugin_dirs], config.analysis.disabled)

    table = Table(title="Analyzers", border_style="magenta")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Issue types")
    table.add_column("Source")
    table.add_column("Enabled")
    for plugin in registry.list():
        table.add_row(
            plugin.name,
            plugin.manifest.version,
            ", ".join(t.value for t in plugin.manifest.issue_types),
            "built-in" if plugin.manifest.builtin else plugin.source or "external",
            "[green]yes[/]" if plugin.enabled else "[dim]no[/]",
        )
    console.print(table)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check SLOPPY configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        key_table.add_row(key, "[green]Available[/]" if available else "[red]Missing[/]")
    console.print(key_table)

    if repo:
        repo = repo.resolve()
        config = _load_config(repo)
        session_config = config.session_config(repo)
        console.print("\n[bold]Routing:[/]")
        console.print(f"  Fixer: {session_config.litellm_model}")
        console.print("\n[bold]Limits:[/]")
        console.print(f"  Max retries/issue: {config.limits.max_retries}")
        console.print(f"  Max turns/attempt: {config.limits.max_turns}")
        console.print(f"  Session timeout:   {config.limits.timeout_minutes:g} min")
        console.print(f"  Max $/session:     ${config.limits.max_dollars_per_session}")
        console.print("\n[bold]Verification:[/]")
        console.print(f"  Test:  {session_config.test_command or '-'}")
        console.print(f"  Lint:  {session_config.lint_command or '-'}")
        console.print(f"  Build: {session_config.build_command or '-'}")
        console.print(f"\n[bold]Git checkout:[/] {'yes' if is_git_repo(repo) else '[red]no[/]'}")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "python3", "node", "cargo", "go"]:
        found = shutil.which(tool)
        tools_table.add_row(tool, f"[green]{found}[/]" if found else "[dim]Not found[/]")
    console.print(tools_table)


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize the .sloppy directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    sloppy_dir = repo / ".sloppy"
    sloppy_dir.mkdir(exist_ok=True)
    (sloppy_dir / "plugins").mkdir(exist_ok=True)
    (sloppy_dir / "logs").mkdir(exist_ok=True)

    config_path = sloppy_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# SLOPPY repo-level config overrides
# These merge with the built-in defaults.

# Pick the fixer model:
# routing:
#   provider: openai
#   fixer: gpt-4o

# Tell SLOPPY how to verify a fix:
# verification:
#   test_command: "pytest -q"
#   lint_command: "ruff check ."

# Narrow what gets analyzed:
# analysis:
#   types: [bug, security, lint_error]
#   exclude: ["vendor/*", "*.generated.*"]

# Adjust limits:
# limits:
#   max_retries: 3
#   timeout_minutes: 60
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".sloppy/worktrees/", ".sloppy/logs/", ".sloppy/sloppy.db"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# SLOPPY\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# SLOPPY\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]Initialized SLOPPY in {sloppy_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Plugins: {sloppy_dir / 'plugins'}")


@app.command()
def batch(
    repos: list[Path] = typer.Argument(..., help="Repositories to clean"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent sessions"),
    db: Path = typer.Option(Path(".sloppy/batch.db"), "--db", help="Shared session database"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run one session per repository in parallel."""
    _print_banner()
    _configure_logging(verbose)

    missing = [r for r in repos if not r.is_dir()]
    if missing:
        console.print(f"[red]Repository not found: {', '.join(str(m) for m in missing)}[/]")
        raise typer.Exit(1)

    store = open_store(str(db))
    try:
        results = run_sessions(store, repos, max_workers=workers)
    finally:
        store.close()

    if any(r.get("status") != "completed" for r in results):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _existing_repo(repo: Path) -> Path:
    repo = repo.resolve()
    if not repo.is_dir():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    return repo


def _load_config(repo: Path, overrides: dict | None = None) -> SloppyConfig:
    try:
        return load_config(repo, overrides)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(2)


def _open_store(repo: Path, config: SloppyConfig) -> BaseStore:
    return open_store(str(repo / config.workspace.db_path))


def _find_session(store: BaseStore, ref: str) -> Session:
    matches = [s for s in store.list_sessions() if s.id.startswith(ref)]
    if len(matches) != 1:
        console.print(f"[red]{'No' if not matches else 'Ambiguous'} session matching '{ref}'[/]")
        raise typer.Exit(1)
    return matches[0]


def _drive(controller: SessionController, action, repo: Path, config: SloppyConfig) -> Session:
    """Run a controller action on a worker thread so Ctrl-C can stop it cleanly."""
    audit = AuditLogger(
        repo / config.workspace.log_dir / f"{controller.session.id}.jsonl",
        session_id=controller.session.id,
    )
    audit.attach(bus)
    errors: list[BaseException] = []

    def target() -> None:
        try:
            action()
        except (InfrastructureError, InvalidTransitionError) as e:
            errors.append(e)

    worker = threading.Thread(target=target, name=f"sloppy-{controller.session.id[:8]}")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Stopping after the current step...[/]")
        controller.stop()
        worker.join()
    finally:
        audit.detach(bus)

    if errors:
        console.print(f"[red]{errors[0]}[/]")
        raise typer.Exit(1)
    return controller.session


def _print_outcome(session: Session) -> None:
    color = _STATUS_COLOR.get(session.status, "red")
    lines = [
        f"[bold {color}]Status: {session.status.value}[/]",
        f"Session: {session.id}",
        f"Branch:  {session.cleaning_branch}",
    ]
    if session.status == SessionStatus.PAUSED:
        lines.append(f"Resume with: sloppy resume {session.id[:8]}")
    if session.error:
        lines.append(f"[red]Error: {session.error}[/]")
    console.print(Panel("\n".join(lines), border_style=color))


def _print_issues(store: BaseStore, session: Session) -> None:
    table = Table(title=f"Issues in {session.id[:8]}", border_style="cyan")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Location")
    table.add_column("Retries", justify="right")
    for issue in store.list_issues(IssueFilter(session_id=session.id)):
        table.add_row(
            issue.id[:8],
            issue.status.value,
            issue.severity.value,
            issue.type.value,
            f"{issue.file_path}:{issue.line}",
            str(issue.retry_count),
        )
    console.print(table)
    commits = store.list_commits(session.id)
    if commits:
        console.print(f"\n[bold]{len(commits)} commit(s)[/], {sum(c.reverted for c in commits)} reverted")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(msg.rstrip("\n"), style="dim", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(msg.rstrip("\n"), style="dim", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
