"""
SLOPPY Parallel Runner

Runs one session per repository side by side. Each worker owns its
session, worktree and cleaning branch; the store is the only thing they
share, and it serializes writes per session.
"""

from __future__ import annotations

import concurrent.futures
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from rich.console import Console
from rich.table import Table

from sloppy.config_loader import ConfigError, load_config
from sloppy.controller import InfrastructureError, SessionController
from sloppy.state import InvalidTransitionError
from sloppy.store import BaseStore

console = Console()

ControllerFactory = Callable[[BaseStore, Path], SessionController]


def _default_factory(store: BaseStore, repo_path: Path) -> SessionController:
    return SessionController.create_session(store, repo_path, load_config(repo_path))


def _run_single_session(store: BaseStore, repo_path: Path, factory: ControllerFactory) -> dict[str, Any]:
    try:
        controller = factory(store, repo_path)
        session = controller.run()
    except (InfrastructureError, ConfigError, InvalidTransitionError) as e:
        logger.error(f"[PARALLEL] Session for {repo_path} failed: {e}")
        return {"repository": str(repo_path), "status": "error", "error": str(e)}
    return {
        "repository": str(repo_path),
        "session_id": session.id,
        "status": session.status.value,
        "branch": session.cleaning_branch,
        "counters": session.counters.model_dump(),
    }


def run_sessions(
    store: BaseStore,
    repo_paths: list[Path],
    max_workers: int = 3,
    factory: ControllerFactory | None = None,
) -> list[dict[str, Any]]:
    """Run a session on every repository, at most `max_workers` at a time."""
    factory = factory or _default_factory
    repo_paths = [Path(p).resolve() for p in repo_paths]
    _print_parallel_header(len(repo_paths), max_workers)

    results: list[dict[str, Any]] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_to_repo = {
            executor.submit(_run_single_session, store, repo, factory): repo
            for repo in repo_paths
        }
        for future in concurrent.futures.as_completed(future_to_repo):
            result = future.result()
            results.append(result)
            _log_session_completion(result)

    results.sort(key=lambda r: repo_paths.index(Path(r["repository"])))
    _print_parallel_summary(results)
    return results


# --- Helpers ---

def _print_parallel_header(count: int, workers: int) -> None:
    console.print(f"\n[bold]SLOPPY batch: {count} repositories, {workers} workers[/]")
    console.print("[dim]Each session is isolated in its own git worktree.[/]\n")


def _log_session_completion(result: dict) -> None:
    status = result.get("status", "unknown")
    color = "green" if status == "completed" else "red"
    console.print(f"  [{color}]{Path(result['repository']).name}: {status}[/]")


def _print_parallel_summary(results: list[dict]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Repository")
    table.add_column("Status")
    table.add_column("Branch")
    table.add_column("Resolved", justify="right")
    table.add_column("Failed", justify="right")

    for r in results:
        status = r.get("status", "unknown")
        color = {"completed": "green", "paused": "yellow"}.get(status, "red")
        counters = r.get("counters", {})
        table.add_row(
            Path(r["repository"]).name,
            f"[{color}]{status}[/]",
            r.get("branch", "-"),
            str(counters.get("resolved", "-")),
            str(counters.get("failed", "-")),
        )
    console.print(table)

    completed = sum(1 for r in results if r.get("status") == "completed")
    console.print(f"\n[bold]{completed}/{len(results)} sessions completed[/]")
