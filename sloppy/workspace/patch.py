"""
Patch application for the write_patch tool.

Three shapes are accepted, tried in this order:
  - search/replace blocks against the current file
  - full replacement content
  - a unified diff, applied with `git apply`
"""

from __future__ import annotations

import re
import subprocess
import tempfile
from pathlib import Path

from loguru import logger


class PatchError(Exception):
    pass


def looks_like_diff(text: str) -> bool:
    """Check if text looks like a unified diff vs plain file content."""
    lines = text.strip().split("\n")[:20]
    diff_markers = 0
    for line in lines:
        if line.startswith(("---", "+++", "@@", "diff ")):
            diff_markers += 1
        if line.startswith(("--- a/", "+++ b/", "diff --git")):
            return True
    return diff_markers >= 2


def strip_fences(text: str) -> str:
    """Drop ``` fences a model wrapped around code."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return text
    lines = [l for l in stripped.split("\n") if not l.strip().startswith("```")]
    return "\n".join(lines) + ("\n" if text.endswith("\n") else "")


def apply_blocks(target: Path, edits: list[dict]) -> int:
    """Apply every search/replace block or none of them."""
    if not target.is_file():
        raise PatchError(f"File not found for modification: {target.name}")
    text = target.read_text(encoding="utf-8")
    for n, block in enumerate(edits, start=1):
        search = block.get("search", "")
        replace = block.get("replace", "")
        if not search:
            raise PatchError(f"Edit {n} has an empty search string")
        count = text.count(search)
        if count == 0:
            raise PatchError(f"Edit {n}: search text not found in {target.name}")
        if count > 1:
            raise PatchError(f"Edit {n}: search text matches {count} places in {target.name}; add more context")
        text = text.replace(search, replace, 1)
    target.write_text(text, encoding="utf-8")
    return len(edits)


def write_content(target: Path, content: str) -> bool:
    """Write full content. Returns True when the file is new."""
    is_new = not target.exists()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(strip_fences(content), encoding="utf-8")
    return is_new


_DIFF_PATH = re.compile(r"^(?:---|\+\+\+) (?:[ab]/)?(\S+)", re.MULTILINE)


def diff_paths(diff: str) -> list[str]:
    paths = []
    for match in _DIFF_PATH.finditer(diff):
        path = match.group(1)
        if path != "/dev/null" and path not in paths:
            paths.append(path)
    return paths


def apply_unified_diff(working_dir: Path, diff: str, timeout: float = 30) -> list[str]:
    """Apply a unified diff inside working_dir. Returns the touched paths."""
    cleaned = strip_fences(diff)
    if not cleaned.endswith("\n"):
        cleaned += "\n"
    if not looks_like_diff(cleaned):
        raise PatchError("Not a valid unified diff (missing ---, +++ or @@ markers)")

    paths = diff_paths(cleaned)
    for path in paths:
        if path.startswith("/") or ".." in Path(path).parts:
            raise PatchError(f"Diff touches a path outside the repository: {path}")

    patch_file = None
    try:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".patch", delete=False) as f:
            f.write(cleaned)
            patch_file = f.name
        result = subprocess.run(
            ["git", "apply", "--recount", "--whitespace=nowarn", patch_file],
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise PatchError(f"git apply failed: {e}") from e
    finally:
        if patch_file:
            Path(patch_file).unlink(missing_ok=True)

    if result.returncode != 0:
        error = (result.stderr or result.stdout).strip()
        logger.warning(f"[PATCH] git apply failed: {error}")
        raise PatchError(f"Patch did not apply: {error}")
    return paths
