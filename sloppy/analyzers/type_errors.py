"""Type errors: code that does not parse, and escape hatches around the type checker."""

from __future__ import annotations

import ast
import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer, scan_lines
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

TS_RULES = [
    (re.compile(r"//\s*@ts-(?:ignore|nocheck)"), IssueType.TYPE_ERROR, Severity.MEDIUM, "Type checking suppressed with @ts-ignore/@ts-nocheck"),
    (re.compile(r":\s*any\b|<any>|as\s+any\b"), IssueType.TYPE_ERROR, Severity.LOW, "Explicit `any` defeats type checking"),
]

PY_RULES = [
    (re.compile(r"#\s*type:\s*ignore(?!\[)"), IssueType.TYPE_ERROR, Severity.LOW, "Blanket `type: ignore` without an error code"),
]


class TypeErrorAnalyzer(BaseAnalyzer):
    name = "types"
    description = "Syntax errors and suppressed type checks"
    issue_types = (IssueType.TYPE_ERROR,)
    extensions = {".py", ".ts", ".tsx"}

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        files = self.files(snapshot)
        py = [f for f in files if f.endswith(".py")]
        ts = [f for f in files if not f.endswith(".py")]

        findings = []
        for rel in py:
            try:
                ast.parse(snapshot.read(rel), filename=rel)
            except SyntaxError as e:
                findings.append(self.finding(
                    snapshot, IssueType.TYPE_ERROR, rel, e.lineno or 1,
                    f"File does not parse: {e.msg}",
                    Severity.CRITICAL,
                ))
        findings.extend(scan_lines(self, snapshot, PY_RULES, py))
        findings.extend(scan_lines(self, snapshot, TS_RULES, ts))
        return findings
