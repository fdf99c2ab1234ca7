"""Stubs: unfinished code left behind as TODO markers or placeholder bodies."""

from __future__ import annotations

import re
from typing import Any

from sloppy.analyzers import BaseAnalyzer
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

_MARKER = re.compile(r"(?:#|//|/\*|\*)\s*(TODO|FIXME|HACK|XXX)\b\s*[:\-]?\s*(.*)", re.IGNORECASE)
_NOT_IMPLEMENTED = re.compile(
    r"raise\s+NotImplementedError|throw\s+new\s+Error\(\s*['\"]not implemented|todo!\(\)|unimplemented!\(\)",
    re.IGNORECASE,
)
_PY_DEF = re.compile(r"^(\s*)(?:async\s+)?def\s+(\w+)")


class StubAnalyzer(BaseAnalyzer):
    name = "stubs"
    description = "TODO/FIXME markers, NotImplemented bodies and pass-only functions"
    issue_types = (IssueType.STUB,)

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        findings = []
        for rel in self.files(snapshot):
            lines = snapshot.lines(rel)
            for i, line in enumerate(lines, start=1):
                marker = _MARKER.search(line)
                if marker:
                    kind = marker.group(1).upper()
                    text = marker.group(2).strip()
                    findings.append(self.finding(
                        snapshot, IssueType.STUB, rel, i,
                        f"{kind}: {text}" if text else f"{kind} comment left in code",
                        Severity.MEDIUM if kind == "FIXME" else Severity.LOW,
                    ))
                elif _NOT_IMPLEMENTED.search(line):
                    findings.append(self.finding(
                        snapshot, IssueType.STUB, rel, i,
                        "Placeholder implementation raises 'not implemented'",
                        Severity.HIGH,
                    ))
            if rel.endswith(".py"):
                findings.extend(self._pass_only_functions(snapshot, rel, lines))
        return findings

    def _pass_only_functions(self, snapshot: FileSnapshot, rel: str, lines: list[str]) -> list[Finding]:
        findings = []
        for i, line in enumerate(lines):
            match = _PY_DEF.match(line)
            if not match or not line.rstrip().endswith(":"):
                continue
            body = []
            for follow in lines[i + 1:]:
                stripped = follow.strip()
                if not stripped:
                    continue
                indent = len(follow) - len(follow.lstrip())
                if indent <= len(match.group(1)):
                    break
                body.append(stripped)
            code = [b for b in body if not b.startswith(("#", '"""', "'''"))]
            if code and all(c in ("pass", "...") for c in code):
                findings.append(self.finding(
                    snapshot, IssueType.STUB, rel, i + 1,
                    f"Function `{match.group(2)}` has an empty placeholder body",
                    Severity.MEDIUM,
                ))
        return findings
