"""Bugs: patterns that are almost always wrong at runtime."""

from __future__ import annotations

import ast
import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer, scan_lines
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

JS_RULES = [
    (
        re.compile(r"[^=!]==\s*(?:null|undefined)\b|(?:null|undefined)\s*==[^=]"),
        IssueType.BUG, Severity.LOW, "Loose equality against null/undefined",
    ),
    (
        re.compile(r"catch\s*\(\s*\w*\s*\)\s*\{\s*\}"),
        IssueType.BUG, Severity.MEDIUM, "Empty catch block swallows errors",
    ),
]


class BugAnalyzer(BaseAnalyzer):
    name = "bugs"
    description = "Swallowed exceptions, mutable defaults, identity comparisons with literals"
    issue_types = (IssueType.BUG,)
    extensions = {".py", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        findings = []
        py_files = [f for f in self.files(snapshot) if f.endswith(".py")]
        js_files = [f for f in self.files(snapshot) if not f.endswith(".py")]
        for rel in py_files:
            try:
                tree = ast.parse(snapshot.read(rel), filename=rel)
            except SyntaxError:
                # reported by the type checker pass
                continue
            findings.extend(self._python(snapshot, rel, tree))
        findings.extend(scan_lines(self, snapshot, JS_RULES, js_files))
        return findings

    def _python(self, snapshot: FileSnapshot, rel: str, tree: ast.AST) -> list[Finding]:
        findings = []
        for node in ast.walk(tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                for default in node.args.defaults + node.args.kw_defaults:
                    if isinstance(default, (ast.List, ast.Dict, ast.Set)):
                        findings.append(self.finding(
                            snapshot, IssueType.BUG, rel, default.lineno,
                            f"Mutable default argument in `{node.name}` is shared between calls",
                            Severity.MEDIUM,
                        ))
            elif isinstance(node, ast.ExceptHandler):
                if all(isinstance(stmt, ast.Pass) for stmt in node.body):
                    findings.append(self.finding(
                        snapshot, IssueType.BUG, rel, node.lineno,
                        "Exception handler silently swallows the error",
                        Severity.MEDIUM,
                        end_line=node.body[-1].lineno,
                    ))
            elif isinstance(node, ast.Compare):
                for op, right in zip(node.ops, node.comparators):
                    literal = isinstance(right, ast.Constant) and isinstance(right.value, (str, int, float, bytes))
                    if isinstance(op, (ast.Is, ast.IsNot)) and literal and not isinstance(right.value, bool):
                        findings.append(self.finding(
                            snapshot, IssueType.BUG, rel, node.lineno,
                            "Identity comparison with a literal; use == instead of `is`",
                            Severity.HIGH,
                        ))
            elif isinstance(node, ast.Assert) and isinstance(node.test, ast.Tuple) and node.test.elts:
                findings.append(self.finding(
                    snapshot, IssueType.BUG, rel, node.lineno,
                    "assert on a non-empty tuple is always true",
                    Severity.HIGH,
                ))
        return findings
