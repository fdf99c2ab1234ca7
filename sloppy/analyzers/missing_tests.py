"""Missing tests: source modules with public API and no matching test file."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any

from sloppy.analyzers import BaseAnalyzer, is_test_file
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity

_PUBLIC = {
    ".py": re.compile(r"^(?:async\s+)?def\s+([a-zA-Z]\w*)|^class\s+([A-Z]\w*)", re.MULTILINE),
    ".ts": re.compile(r"^export\s+(?:async\s+)?(?:function|class|const)\s+(\w+)", re.MULTILINE),
    ".js": re.compile(r"^export\s+(?:async\s+)?(?:function|class|const)\s+(\w+)", re.MULTILINE),
}


class MissingTestAnalyzer(BaseAnalyzer):
    name = "missing-tests"
    description = "Modules exposing public functions without any test referencing them"
    issue_types = (IssueType.MISSING_TEST,)
    extensions = {".py", ".ts", ".js"}

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        files = self.files(snapshot)
        tests = [f for f in files if is_test_file(f)]
        test_names = {PurePosixPath(t).name for t in tests}
        test_corpus = "\n".join(snapshot.read(t) for t in tests)

        findings = []
        for rel in files:
            path = PurePosixPath(rel)
            if is_test_file(rel) or path.name.startswith("__") or path.name in ("setup.py", "conftest.py"):
                continue
            pattern = _PUBLIC.get(path.suffix)
            match = pattern.search(snapshot.read(rel)) if pattern else None
            if not match:
                continue
            stem = path.stem
            candidates = {
                f"test_{stem}.py", f"{stem}_test.py",
                f"{stem}.test.ts", f"{stem}.spec.ts", f"{stem}.test.js", f"{stem}.spec.js",
            }
            if candidates & test_names or re.search(rf"\b{re.escape(stem)}\b", test_corpus):
                continue
            line = snapshot.read(rel)[: match.start()].count("\n") + 1
            findings.append(self.finding(
                snapshot, IssueType.MISSING_TEST, rel, line,
                f"No tests cover module `{stem}`",
                Severity.LOW,
            ))
        return findings
