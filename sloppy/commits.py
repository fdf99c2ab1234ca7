"""
SLOPPY Commit/Revert Manager

Turns a verified working-copy change into a recorded, revertible commit
on the cleaning branch, and undoes such commits on request. Both
operations report failure through their result objects and never raise.
"""

from __future__ import annotations

import re
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from sloppy.state import ChangeType, Commit, FileChange
from sloppy.store import BaseStore, StoreError
from sloppy.workspace import WorkspaceError, run_git

SUBJECT_LIMIT = 72
FIX_TRAILER = "[sloppy-automated-fix]"


class CommitOptions(BaseModel):
    session_id: str
    issue_id: str | None = None
    message: str
    files: list[str] | None = None


class CommitResult(BaseModel):
    success: bool
    commit: Commit | None = None
    error: str | None = None


class RevertOptions(BaseModel):
    commit_id: str
    reason: str
    create_revert_commit: bool = True


class RevertResult(BaseModel):
    success: bool
    revert_hash: str | None = None
    reverted_ids: list[str] = Field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def format_commit_message(
    prefix: str,
    issue_type: str,
    description: str,
    body: str | None = None,
    issue_id: str | None = None,
) -> str:
    """`<prefix> [<type>] <description>` kept within the subject limit, plus body and trailer."""
    description = " ".join(description.split())
    subject = f"{prefix} [{issue_type}] {description}".strip()
    if len(subject) > SUBJECT_LIMIT:
        subject = subject[: SUBJECT_LIMIT - 3].rstrip() + "..."
    parts = [subject]
    if body and body.strip():
        parts.append(body.strip())
    trailer = [FIX_TRAILER]
    if issue_id:
        trailer.insert(0, f"Issue-ID: {issue_id}")
    parts.append("\n".join(trailer))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Diff parsing
# ---------------------------------------------------------------------------

_DIFF_HEADER = re.compile(r"^diff --git a/(.+?) b/(.+)$")


_RENAME_BRACES = re.compile(r"\{(.*?) => (.*?)\}")


def _numstat_path(raw: str) -> str:
    """Destination path of a numstat entry, including `{old => new}` renames."""
    if " => " not in raw:
        return raw
    if _RENAME_BRACES.search(raw):
        return re.sub(r"/{2,}", "/", _RENAME_BRACES.sub(lambda m: m.group(2), raw))
    return raw.split(" => ", 1)[1]


def parse_numstat(output: str) -> dict[str, tuple[int, int]]:
    """`git --numstat` lines to {path: (added, removed)}; binary files count as 0."""
    counts: dict[str, tuple[int, int]] = {}
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        added, removed, path = parts
        counts[_numstat_path(path)] = (
            int(added) if added.isdigit() else 0,
            int(removed) if removed.isdigit() else 0,
        )
    return counts


def parse_diff_to_file_changes(diff: str) -> list[FileChange]:
    """Per-file change type and line counts from a unified git diff."""
    changes: list[FileChange] = []
    current: FileChange | None = None
    in_hunk = False

    for line in diff.splitlines():
        header = _DIFF_HEADER.match(line)
        if header:
            old, new = header.groups()
            current = FileChange(path=new)
            if old != new:
                current.change_type = ChangeType.RENAMED
                current.old_path = old
            changes.append(current)
            in_hunk = False
            continue
        if current is None:
            continue
        if not in_hunk:
            if line.startswith("new file mode"):
                current.change_type = ChangeType.ADDED
            elif line.startswith("deleted file mode"):
                current.change_type = ChangeType.DELETED
            elif line.startswith("rename from "):
                current.change_type = ChangeType.RENAMED
                current.old_path = line[len("rename from "):]
            elif line.startswith("rename to "):
                current.path = line[len("rename to "):]
            elif line.startswith("@@"):
                in_hunk = True
            continue
        if line.startswith("@@"):
            continue
        if line.startswith("+"):
            current.lines_added += 1
        elif line.startswith("-"):
            current.lines_removed += 1
    return changes


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CommitManager:
    def __init__(
        self,
        store: BaseStore,
        repo_dir: Path,
        author_name: str | None = None,
        author_email: str | None = None,
    ):
        self.store = store
        self.repo_dir = Path(repo_dir)
        self.author_name = author_name
        self.author_email = author_email

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return run_git(self.repo_dir, *args, check=check, capture=capture)

    def _identity(self) -> list[str]:
        flags = []
        if self.author_name:
            flags += ["-c", f"user.name={self.author_name}"]
        if self.author_email:
            flags += ["-c", f"user.email={self.author_email}"]
        return flags

    def _is_dirty(self) -> bool:
        return bool(self._git("status", "--porcelain", capture=True).strip())

    def commit(self, options: CommitOptions) -> CommitResult:
        """Stage, commit and record. Failures come back as `success=False`."""
        parent: str | None = None
        try:
            if options.files:
                self._git("add", "-A", "--", *options.files)
            else:
                self._git("add", "-A")

            staged = self._git("diff", "--cached", "--name-only", capture=True).strip()
            if not staged:
                return CommitResult(success=False, error="Nothing to commit")

            parent = self._git("rev-parse", "HEAD", capture=True).strip()
            self._git(*self._identity(), "commit", "-q", "-m", options.message)
            sha = self._git("rev-parse", "HEAD", capture=True).strip()
            diff = self._git("show", "--format=", "-M", "--no-color", "HEAD", capture=True)
            author, _, email = self._git("log", "-1", "--format=%an%x00%ae", capture=True).strip().partition("\x00")
            numstat = parse_numstat(self._git("show", "--numstat", "--format=", "-M", "HEAD", capture=True))
            files = parse_diff_to_file_changes(diff)
            for change in files:
                if change.path in numstat:
                    change.lines_added, change.lines_removed = numstat[change.path]

            commit = Commit(
                session_id=options.session_id,
                issue_id=options.issue_id,
                hash=sha,
                message=options.message,
                diff_content=diff,
                files_changed=files,
                lines_added=sum(f.lines_added for f in files),
                lines_removed=sum(f.lines_removed for f in files),
                author=author,
                author_email=email,
            )
            self.store.create_commit(commit)
        except (WorkspaceError, StoreError) as e:
            logger.warning(f"[COMMIT] Commit failed: {e}")
            if parent is not None:
                self._unwind(parent)
            return CommitResult(success=False, error=str(e))

        logger.info(f"[COMMIT] {sha[:10]} {options.message.splitlines()[0]}")
        return CommitResult(success=True, commit=commit)

    def _unwind(self, parent: str) -> None:
        """Drop a commit that never made it into the store; its changes stay staged."""
        try:
            if self._git("rev-parse", "HEAD", capture=True).strip() != parent:
                self._git("reset", "-q", "--soft", parent)
                logger.warning(f"[COMMIT] Unrecorded commit rolled back to {parent[:10]}")
        except WorkspaceError as e:
            logger.error(f"[COMMIT] Could not roll back an unrecorded commit: {e}")

    def revert(self, options: RevertOptions) -> RevertResult:
        """Undo a recorded commit, as a new revert commit or by hard reset."""
        reason = options.reason.strip()
        if not reason:
            return RevertResult(success=False, error="A revert reason is required")

        try:
            commit = self.store.get_commit(options.commit_id)
            if commit is None:
                return RevertResult(success=False, error=f"Commit not found: {options.commit_id}")
            if commit.reverted:
                return RevertResult(success=False, error=f"Commit {commit.hash[:10]} is already reverted")
            if not self._commit_exists(commit.hash):
                return RevertResult(success=False, error=f"Commit {commit.hash[:10]} not found in repository")
            if self._is_dirty():
                return RevertResult(success=False, error="Working tree has uncommitted changes")

            if options.create_revert_commit:
                return self._revert_as_commit(commit, reason)
            return self._reset_to_parent(commit, reason)
        except (WorkspaceError, StoreError) as e:
            logger.warning(f"[COMMIT] Revert failed: {e}")
            return RevertResult(success=False, error=str(e))

    def _commit_exists(self, sha: str) -> bool:
        try:
            self._git("cat-file", "-e", f"{sha}^{{commit}}")
        except WorkspaceError:
            return False
        return True

    def _revert_as_commit(self, commit: Commit, reason: str) -> RevertResult:
        try:
            self._git(*self._identity(), "revert", "--no-edit", commit.hash)
        except WorkspaceError as e:
            self._git("revert", "--abort", check=False)
            return RevertResult(success=False, error=f"git revert failed: {e}")
        revert_hash = self._git("rev-parse", "HEAD", capture=True).strip()
        self.store.mark_reverted(commit.id, reason, revert_hash)
        logger.info(f"[COMMIT] Reverted {commit.hash[:10]} with {revert_hash[:10]}: {reason}")
        return RevertResult(success=True, revert_hash=revert_hash, reverted_ids=[commit.id])

    def _reset_to_parent(self, commit: Commit, reason: str) -> RevertResult:
        try:
            parent = self._git("rev-parse", f"{commit.hash}^", capture=True).strip()
        except WorkspaceError:
            return RevertResult(success=False, error=f"Commit {commit.hash[:10]} has no parent to reset to")

        session_commits = self.store.list_commits(commit.session_id)
        ids = [c.id for c in session_commits]
        later = [
            c for c in session_commits[ids.index(commit.id) + 1:]
            if not c.reverted and self._is_ancestor(c.hash, "HEAD")
        ] if commit.id in ids else []

        self._git("reset", "--hard", parent)
        self.store.mark_reverted(commit.id, reason)
        reverted = [commit.id]
        for c in later:
            self.store.mark_reverted(c.id, f"Discarded by reset to {parent[:10]} while reverting {commit.hash[:10]}: {reason}")
            reverted.append(c.id)
        logger.info(f"[COMMIT] Reset to {parent[:10]}, discarding {len(reverted)} commit(s): {reason}")
        return RevertResult(success=True, reverted_ids=reverted)

    def _is_ancestor(self, sha: str, of: str) -> bool:
        try:
            self._git("merge-base", "--is-ancestor", sha, of)
        except WorkspaceError:
            return False
        return True
