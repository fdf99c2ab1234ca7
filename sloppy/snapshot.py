"""
SLOPPY File Browser + Snapshot

Every read the pipeline makes, whether from an analyzer or from the model
through a tool call, goes through a FileBrowser rooted at one checkout.
Paths are resolved against the root and anything that escapes it is
refused. Reads above `max_file_bytes` are refused too.

A FileSnapshot is the frozen file listing a scan works from: the set of
paths is fixed when it is taken and contents are cached on first read, so
every analyzer in one scan sees the same tree.
"""

from __future__ import annotations

import fnmatch
import os
import threading
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, Field

SKIP_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", "env",
    "target", "dist", "build", ".sloppy", ".mypy_cache", ".pytest_cache",
    ".tox", ".next", "coverage", "site-packages", ".idea", ".vscode",
}

SOURCE_EXTENSIONS = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".go", ".rs",
    ".java", ".kt", ".rb", ".php", ".cs", ".c", ".h", ".cpp", ".hpp",
    ".swift", ".scala", ".sh", ".vue", ".svelte",
}

DEFAULT_EXCLUDES = ["*.d.ts", "*.min.js"]


class BrowserError(Exception):
    pass


class PathTraversalError(BrowserError):
    pass


class FileTooLargeError(BrowserError):
    pass


class DirectoryEntry(BaseModel):
    name: str
    path: str
    kind: str  # "file" | "dir"
    size: int = 0
    children: list["DirectoryEntry"] = Field(default_factory=list)

    def render(self, indent: int = 0) -> str:
        pad = "  " * indent
        label = f"{self.name}/" if self.kind == "dir" else f"{self.name} ({self.size}b)"
        lines = [f"{pad}{label}"]
        for child in self.children:
            lines.append(child.render(indent + 1))
        return "\n".join(lines)


class FileBrowser:
    """Bounded, root-confined access to one checkout."""

    def __init__(
        self,
        root: Path,
        max_depth: int = 8,
        max_file_bytes: int = 200_000,
        exclude: list[str] | None = None,
    ):
        self.root = Path(root).resolve()
        self.max_depth = max_depth
        self.max_file_bytes = max_file_bytes
        self.exclude = list(DEFAULT_EXCLUDES) + list(exclude or [])

    def resolve(self, path: str | Path) -> Path:
        """Absolute path inside the root, or PathTraversalError."""
        candidate = Path(path)
        full = (candidate if candidate.is_absolute() else self.root / candidate).resolve()
        if full != self.root and self.root not in full.parents:
            raise PathTraversalError(f"Path escapes the repository root: {path}")
        return full

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.root).as_posix()

    def is_excluded(self, rel_path: str) -> bool:
        parts = rel_path.split("/")
        if any(part in SKIP_DIRS for part in parts[:-1]):
            return True
        return any(
            fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(parts[-1], pattern)
            for pattern in self.exclude
        )

    def read(self, path: str | Path) -> str:
        full = self.resolve(path)
        if not full.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        size = full.stat().st_size
        if size > self.max_file_bytes:
            raise FileTooLargeError(
                f"{path} is {size} bytes, above the {self.max_file_bytes} byte read limit"
            )
        return full.read_text(encoding="utf-8", errors="replace")

    def exists(self, path: str | Path) -> bool:
        try:
            return self.resolve(path).is_file()
        except PathTraversalError:
            return False

    def list(self, path: str | Path = ".", depth: int = 1) -> DirectoryEntry:
        """Directory tree under `path`, `depth` levels deep (capped by max_depth)."""
        full = self.resolve(path)
        if not full.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        depth = max(0, min(depth, self.max_depth))
        return self._walk(full, depth)

    def _walk(self, directory: Path, depth: int) -> DirectoryEntry:
        rel = "." if directory == self.root else self.relative(directory)
        entry = DirectoryEntry(name=directory.name or ".", path=rel, kind="dir")
        if depth <= 0:
            return entry
        for child in sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name)):
            if child.is_symlink():
                continue
            child_rel = self.relative(child)
            if child.is_dir():
                if child.name in SKIP_DIRS:
                    continue
                entry.children.append(self._walk(child, depth - 1))
            elif not self.is_excluded(child_rel):
                entry.children.append(
                    DirectoryEntry(name=child.name, path=child_rel, kind="file", size=child.stat().st_size)
                )
        return entry

    def iter_files(self, extensions: set[str] | None = None) -> Iterator[str]:
        """Yield relative paths of readable source files, sorted, respecting exclusions."""
        extensions = extensions if extensions is not None else SOURCE_EXTENSIONS
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            base = Path(dirpath)
            depth = len(base.relative_to(self.root).parts)
            dirnames[:] = [
                d for d in dirnames
                if d not in SKIP_DIRS and depth < self.max_depth and not (base / d).is_symlink()
            ]
            for name in filenames:
                path = base / name
                if path.is_symlink() or not path.is_file():
                    continue
                if extensions and path.suffix.lower() not in extensions:
                    continue
                rel = path.relative_to(self.root).as_posix()
                if self.is_excluded(rel) or path.stat().st_size > self.max_file_bytes:
                    continue
                found.append(rel)
        yield from sorted(found)

    def snapshot(self, extensions: set[str] | None = None) -> "FileSnapshot":
        return FileSnapshot(self, tuple(self.iter_files(extensions)))


class FileSnapshot:
    """Read-only view of the files one scan works from."""

    def __init__(self, browser: FileBrowser, files: tuple[str, ...]):
        self.browser = browser
        self.files = files
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self.browser.root

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[str]:
        return iter(self.files)

    def read(self, rel_path: str) -> str:
        with self._lock:
            cached = self._cache.get(rel_path)
        if cached is not None:
            return cached
        content = self.browser.read(rel_path)
        with self._lock:
            self._cache.setdefault(rel_path, content)
        return content

    def lines(self, rel_path: str) -> list[str]:
        return self.read(rel_path).splitlines()

    def with_suffix(self, *suffixes: str) -> list[str]:
        return [f for f in self.files if Path(f).suffix.lower() in suffixes]

    def excerpt(self, rel_path: str, line: int, context: int = 2) -> str:
        lines = self.lines(rel_path)
        start = max(0, line - 1 - context)
        end = min(len(lines), line + context)
        return "\n".join(lines[start:end])
