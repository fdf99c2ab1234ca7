"""Duplicates: identical blocks of code copied between places."""

from __future__ import annotations

import hashlib
from typing import Any

from sloppy.analyzers import BaseAnalyzer
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity


def _normalize(line: str) -> str:
    return " ".join(line.split())


class DuplicateAnalyzer(BaseAnalyzer):
    name = "duplicates"
    description = "Repeated windows of normalized source lines"
    issue_types = (IssueType.DUPLICATE,)

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        window = int(options.get("min_lines", 6))
        first_seen: dict[str, tuple[str, int]] = {}
        findings: list[Finding] = []
        reported: dict[str, int] = {}

        for rel in self.files(snapshot):
            lines = snapshot.lines(rel)
            numbered = [(i + 1, _normalize(l)) for i, l in enumerate(lines)]
            meaningful = [(n, l) for n, l in numbered if len(l) > 3 and l not in ("{", "}", "};", ")", "]")]
            for start in range(0, len(meaningful) - window + 1):
                chunk = meaningful[start:start + window]
                digest = hashlib.sha1("\n".join(l for _, l in chunk).encode()).hexdigest()
                line_no, end_no = chunk[0][0], chunk[-1][0]
                origin = first_seen.get(digest)
                if origin is None:
                    first_seen[digest] = (rel, line_no)
                    continue
                if origin[0] == rel and origin[1] + window > line_no:
                    continue
                # extend the previous finding instead of one per sliding window
                if reported.get(rel, -1) >= line_no:
                    continue
                reported[rel] = end_no
                findings.append(self.finding(
                    snapshot, IssueType.DUPLICATE, rel, line_no,
                    f"Block duplicates {origin[0]}:{origin[1]}",
                    Severity.LOW,
                    end_line=end_no,
                ))
        return findings
