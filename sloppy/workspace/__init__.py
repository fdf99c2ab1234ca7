"""
SLOPPY Workspace Isolation

Every session works in its own `git worktree` checked out on the
session's cleaning branch, so fixes never touch the user's checkout and
the branch keeps every commit after the worktree is gone.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from loguru import logger


class WorkspaceError(Exception):
    pass


class Workspace:
    """
    Manages an isolated git worktree for a single session.
    """

    def __init__(
        self,
        repo_path: Path,
        session_id: str,
        branch_name: str,
        worktree_base: str = ".sloppy/worktrees",
    ):
        self.repo_path = Path(repo_path).resolve()
        self.session_id = session_id
        self.branch_name = branch_name
        self.worktree_path = self.repo_path / worktree_base / session_id

    @property
    def path(self) -> Path:
        return self.worktree_path

    @property
    def exists(self) -> bool:
        return (self.worktree_path / ".git").exists()

    def create(self, base_branch: str) -> Path:
        """
        Check out the cleaning branch in a fresh worktree.
        An existing branch is reused as-is so commits from an earlier run survive.
        """
        if self.exists:
            logger.info(f"[WORKSPACE] Reusing worktree {self.worktree_path}")
            return self.worktree_path

        if self.worktree_path.exists():
            shutil.rmtree(self.worktree_path, ignore_errors=True)
        self._git("worktree", "prune", check=False)
        self.worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._ignore_sloppy_dir()

        if self._branch_exists(self.branch_name):
            self._git("worktree", "add", str(self.worktree_path), self.branch_name)
        else:
            self._git("worktree", "add", "-b", self.branch_name, str(self.worktree_path), base_branch)

        logger.info(f"[WORKSPACE] Worktree ready on {self.branch_name}: {self.worktree_path}")
        return self.worktree_path

    def head(self) -> str:
        return self._worktree_git("rev-parse", "HEAD", capture=True).strip()

    def changed_files(self) -> list[str]:
        """Paths with uncommitted changes, untracked files included."""
        out = self._worktree_git("status", "--porcelain", "--untracked-files=all", capture=True)
        paths = []
        for line in out.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            paths.append(path.strip('"'))
        return paths

    def is_clean(self) -> bool:
        return not self.changed_files()

    def discard_changes(self) -> None:
        """Throw away every uncommitted change, back to the last commit."""
        self._worktree_git("reset", "--hard", "HEAD")
        self._worktree_git("clean", "-fd")
        logger.debug(f"[WORKSPACE] Working copy reset to {self.head()[:10]}")

    def diff_full(self) -> str:
        """Full unified diff of uncommitted changes, new files included."""
        self._worktree_git("add", "-A", check=False)
        diff = self._worktree_git("diff", "--cached", capture=True, check=False)
        self._worktree_git("reset", "-q", check=False)
        return diff

    def cleanup(self, delete_branch: bool = False) -> None:
        """Remove the worktree. The branch stays unless asked otherwise."""
        self._git("worktree", "remove", "--force", str(self.worktree_path), check=False)
        if self.worktree_path.exists():
            shutil.rmtree(self.worktree_path, ignore_errors=True)
        if delete_branch:
            self._git("branch", "-D", self.branch_name, check=False)
        self._git("worktree", "prune", check=False)
        logger.info(f"[WORKSPACE] Cleanup complete: {self.session_id}")

    def _ignore_sloppy_dir(self) -> None:
        git_dir = self.repo_path / ".git"
        if not git_dir.is_dir():
            return
        exclude = git_dir / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        current = exclude.read_text() if exclude.exists() else ""
        if ".sloppy/" not in current.splitlines():
            with open(exclude, "a") as f:
                f.write(("\n" if current and not current.endswith("\n") else "") + ".sloppy/\n")

    def _branch_exists(self, name: str) -> bool:
        res = self._git("branch", "--list", name, capture=True)
        return bool(res.strip())

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return run_git(self.repo_path, *args, check=check, capture=capture)

    def _worktree_git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return run_git(self.worktree_path, *args, check=check, capture=capture)


def run_git(cwd: Path, *args: str, check: bool = True, capture: bool = False, timeout: float = 60) -> str:
    cmd = ["git", *args]
    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{e}") from e
    if check and result.returncode != 0:
        raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
    return result.stdout if capture else ""


def is_git_repo(path: Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        out = run_git(Path(path), "rev-parse", "--is-inside-work-tree", capture=True)
    except WorkspaceError:
        return False
    return out.strip() == "true"


def current_branch(repo_path: Path) -> str:
    return run_git(repo_path, "rev-parse", "--abbrev-ref", "HEAD", capture=True).strip()
