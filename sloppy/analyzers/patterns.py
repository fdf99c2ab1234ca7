"""Pattern analyzer: regex rules declared in a YAML plugin manifest.

    name: no-print
    version: 1.0.0
    description: Flags print() debugging
    patterns:
      - regex: "^\\s*print\\("
        type: lint_error
        severity: low
        description: print() left in code
        extensions: .py
    filters:
      exclude-paths: ["scripts/*"]
      min-severity: low
"""

from __future__ import annotations

import fnmatch
import re
from typing import Any

from pydantic import BaseModel, Field, field_validator

from sloppy.analyzers import BaseAnalyzer
from sloppy.snapshot import FileSnapshot
from sloppy.state import Finding, IssueType, Severity


class PatternRule(BaseModel):
    regex: str
    type: IssueType = IssueType.LINT_ERROR
    severity: Severity = Severity.MEDIUM
    description: str = ""
    extensions: list[str] | None = None

    @field_validator("regex")
    @classmethod
    def _compiles(cls, value: str) -> str:
        if not value:
            raise ValueError("pattern regex must not be empty")
        re.compile(value)
        return value

    @field_validator("extensions", mode="before")
    @classmethod
    def _split_extensions(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [v.strip() for v in value.split(",") if v.strip()]
        if value:
            value = [v if v.startswith(".") else f".{v}" for v in value]
        return value


class PatternFilters(BaseModel):
    exclude_paths: list[str] = Field(default_factory=list, alias="exclude-paths")
    min_severity: Severity | None = Field(default=None, alias="min-severity")

    model_config = {"populate_by_name": True}


class PatternAnalyzer(BaseAnalyzer):
    """Runs a fixed list of regex rules over every matching file."""

    def __init__(self, name: str, description: str, rules: list[PatternRule], filters: PatternFilters | None = None):
        self.name = name
        self.description = description
        self.rules = rules
        self.filters = filters or PatternFilters()
        self.issue_types = tuple(dict.fromkeys(rule.type for rule in rules))
        self._compiled = [(re.compile(rule.regex), rule) for rule in rules]

    def _excluded(self, rel: str) -> bool:
        return any(fnmatch.fnmatch(rel, pattern) for pattern in self.filters.exclude_paths)

    def detect(self, snapshot: FileSnapshot, options: dict[str, Any]) -> list[Finding]:
        floor = self.filters.min_severity.rank if self.filters.min_severity else 0
        findings = []
        for rel in self.files(snapshot):
            if self._excluded(rel):
                continue
            suffix = "." + rel.rsplit(".", 1)[-1] if "." in rel else ""
            for i, line in enumerate(snapshot.lines(rel), start=1):
                for pattern, rule in self._compiled:
                    if rule.extensions and suffix not in rule.extensions:
                        continue
                    if rule.severity.rank < floor:
                        continue
                    if pattern.search(line):
                        findings.append(self.finding(
                            snapshot, rule.type, rel, i,
                            rule.description or f"Matches pattern {rule.regex}",
                            rule.severity,
                        ))
        return findings
