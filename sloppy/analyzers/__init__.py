"""
SLOPPY Analyzer Roster

Each analyzer is:
  - a name (unique inside the plugin registry)
  - the issue types it can report
  - a `detect(snapshot, options)` pass over a read-only FileSnapshot

Analyzers are stateless between scans and never write to the checkout.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from sloppy.snapshot import FileSnapshot
from sloppy.state import Category, Finding, IssueType, Severity

_SEVERITY_CATEGORY = {
    Severity.CRITICAL: Category.ERROR,
    Severity.HIGH: Category.ERROR,
    Severity.MEDIUM: Category.WARNING,
    Severity.LOW: Category.SUGGESTION,
}


class BaseAnalyzer(ABC):
    """
    Base class for all SLOPPY analyzers.

    Subclasses define:
      - name: str
      - description: str
      - issue_types: the IssueTypes this analyzer may emit
      - extensions: file suffixes it reads (None means every source file)
      - detect(): the scan itself
    """

    name: str = "unknown"
    description: str = ""
    issue_types: tuple[IssueType, ...] = ()
    extensions: set[str] | None = None

    @abstractmethod
    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        """Scan the snapshot and return raw findings."""
        ...

    def files(self, snapshot: FileSnapshot) -> list[str]:
        if self.extensions is None:
            return list(snapshot.files)
        return snapshot.with_suffix(*self.extensions)

    def finding(
        self,
        snapshot: FileSnapshot,
        type: IssueType,
        file_path: str,
        line: int,
        message: str,
        severity: Severity = Severity.MEDIUM,
        end_line: int | None = None,
        category: Category | None = None,
    ) -> Finding:
        return Finding(
            type=type,
            severity=severity,
            category=category or _SEVERITY_CATEGORY[severity],
            source=self.name,
            file_path=file_path,
            line=line,
            end_line=end_line,
            message=message,
            code_excerpt=snapshot.excerpt(file_path, line),
        )


def scan_lines(
    analyzer: BaseAnalyzer,
    snapshot: FileSnapshot,
    rules: list[tuple[re.Pattern, IssueType, Severity, str]],
    files: list[str] | None = None,
) -> list[Finding]:
    """Run line-level regex rules over the analyzer's files."""
    findings = []
    for rel in files if files is not None else analyzer.files(snapshot):
        for i, line in enumerate(snapshot.lines(rel), start=1):
            for pattern, issue_type, severity, message in rules:
                if pattern.search(line):
                    findings.append(analyzer.finding(snapshot, issue_type, rel, i, message, severity))
    return findings


def is_test_file(rel_path: str) -> bool:
    name = Path(rel_path).name
    parts = rel_path.split("/")
    return (
        name.startswith("test_")
        or name.endswith(("_test.py", "_test.go"))
        or ".test." in name
        or ".spec." in name
        or "tests" in parts[:-1]
        or "__tests__" in parts[:-1]
    )


def builtin_analyzers() -> list[BaseAnalyzer]:
    """One instance of every analyzer that ships with SLOPPY, in priority order."""
    from sloppy.analyzers.bugs import BugAnalyzer
    from sloppy.analyzers.dead_code import DeadCodeAnalyzer
    from sloppy.analyzers.duplicates import DuplicateAnalyzer
    from sloppy.analyzers.lint import LintAnalyzer
    from sloppy.analyzers.missing_tests import MissingTestAnalyzer
    from sloppy.analyzers.security import SecurityAnalyzer
    from sloppy.analyzers.stubs import StubAnalyzer
    from sloppy.analyzers.type_errors import TypeErrorAnalyzer

    return [
        SecurityAnalyzer(),
        BugAnalyzer(),
        TypeErrorAnalyzer(),
        StubAnalyzer(),
        LintAnalyzer(),
        DeadCodeAnalyzer(),
        DuplicateAnalyzer(),
        MissingTestAnalyzer(),
    ]
