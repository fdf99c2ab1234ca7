"""Lint: style violations that tooling would flag."""

from __future__ import annotations

import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer, scan_lines
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

PY_RULES = [
    (re.compile(r"^\s*except\s*:"), IssueType.LINT_ERROR, Severity.MEDIUM, "Bare `except:` catches SystemExit and KeyboardInterrupt"),
    (re.compile(r"[!=]=\s*None\b"), IssueType.LINT_ERROR, Severity.LOW, "Comparison to None should use `is` / `is not`"),
    (re.compile(r"^\s*from\s+\S+\s+import\s+\*"), IssueType.LINT_ERROR, Severity.LOW, "Wildcard import hides where names come from"),
]

JS_RULES = [
    (re.compile(r"\bvar\s+\w+"), IssueType.LINT_ERROR, Severity.LOW, "`var` declaration; prefer let/const"),
    (re.compile(r"^\s*console\.(?:log|debug)\("), IssueType.LINT_ERROR, Severity.LOW, "Leftover console logging"),
    (re.compile(r"^\s*debugger;?\s*$"), IssueType.LINT_ERROR, Severity.MEDIUM, "`debugger` statement left in code"),
]


class LintAnalyzer(BaseAnalyzer):
    name = "lint"
    description = "Bare excepts, wildcard imports, leftover debugging, overlong lines"
    issue_types = (IssueType.LINT_ERROR,)

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        max_line = int(options.get("max_line_length", 160))
        files = self.files(snapshot)
        py = [f for f in files if f.endswith(".py")]
        js = [f for f in files if f.endswith((".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"))]

        findings = scan_lines(self, snapshot, PY_RULES, py)
        findings.extend(scan_lines(self, snapshot, JS_RULES, js))
        for rel in files:
            for i, line in enumerate(snapshot.lines(rel), start=1):
                if len(line) > max_line:
                    findings.append(self.finding(
                        snapshot, IssueType.LINT_ERROR, rel, i,
                        f"Line is {len(line)} characters (limit {max_line})",
                        Severity.LOW,
                    ))
        return findings
