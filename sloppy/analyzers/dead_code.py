"""Dead code: unreachable statements and private helpers nobody calls."""

from __future__ import annotations

import ast
import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

_TERMINATORS = (ast.Return, ast.Raise, ast.Continue, ast.Break)


class DeadCodeAnalyzer(BaseAnalyzer):
    name = "dead-code"
    description = "Statements after return/raise and unused private functions"
    issue_types = (IssueType.DEAD_CODE,)
    extensions = {".py"}

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        findings = []
        trees: dict[str, ast.AST] = {}
        for rel in self.files(snapshot):
            try:
                trees[rel] = ast.parse(snapshot.read(rel), filename=rel)
            except SyntaxError:
                continue

        for rel, tree in trees.items():
            findings.extend(self._unreachable(snapshot, rel, tree))

        corpus = "\n".join(snapshot.read(rel) for rel in trees)
        for rel, tree in trees.items():
            findings.extend(self._unused_private(snapshot, rel, tree, corpus))
        return findings

    def _unreachable(self, snapshot: FileSnapshot, rel: str, tree: ast.AST) -> list[Finding]:
        findings = []
        for node in ast.walk(tree):
            for field in ("body", "orelse", "finalbody"):
                block = getattr(node, field, None)
                if not isinstance(block, list):
                    continue
                for index, stmt in enumerate(block[:-1]):
                    if isinstance(stmt, _TERMINATORS):
                        dead = block[index + 1:]
                        findings.append(self.finding(
                            snapshot, IssueType.DEAD_CODE, rel, dead[0].lineno,
                            f"Unreachable code after `{type(stmt).__name__.lower()}`",
                            Severity.MEDIUM,
                            end_line=getattr(dead[-1], "end_lineno", None) or dead[-1].lineno,
                        ))
                        break
        return findings

    def _unused_private(self, snapshot: FileSnapshot, rel: str, tree: ast.AST, corpus: str) -> list[Finding]:
        findings = []
        for node in tree.body:
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            name = node.name
            if not name.startswith("_") or name.startswith("__"):
                continue
            uses = len(re.findall(rf"\b{re.escape(name)}\b", corpus))
            if uses <= 1:
                findings.append(self.finding(
                    snapshot, IssueType.DEAD_CODE, rel, node.lineno,
                    f"Private function `{name}` is never used",
                    Severity.LOW,
                    end_line=getattr(node, "end_lineno", None),
                ))
        return findings
