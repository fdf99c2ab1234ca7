"""
Re-analysis of a patched working copy.

Passing verification only says the project still builds and its tests
still run. Before a fix is committed, the analyzer that reported the
issue scans the worktree again:

  - the original finding must be gone
  - the patched file must not pick up findings it did not have before

Anything left over goes back to the fixer as correction feedback.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from sloppy.analyzers import BaseAnalyzer
from sloppy.plugins import PluginRegistry
from sloppy.snapshot import FileBrowser
from sloppy.state import Finding, Issue, same_finding

_DIGITS = re.compile(r"\d+")


@dataclass
class ReAnalysis:
    issue_remains: bool = False
    new_findings: list[Finding] = field(default_factory=list)
    skipped: bool = False

    @property
    def passed(self) -> bool:
        return not self.issue_remains and not self.new_findings

    def feedback(self, issue: Issue) -> str:
        parts = []
        if self.issue_remains:
            parts.append(
                f"The original issue is still reported at {issue.file_path}: "
                f"[{issue.type.value}] {issue.message}"
            )
        if self.new_findings:
            parts.append("The change introduced new findings:")
            parts.extend(f"  - line {f.line} [{f.type.value}/{f.severity.value}] {f.message}" for f in self.new_findings)
        return "\n".join(parts)


def _key(finding: Finding | Issue) -> tuple[str, str]:
    # messages may quote line numbers that move with the patch
    return finding.type.value, _DIGITS.sub("#", finding.message)


class ReAnalyzer:
    """Runs an issue's source analyzer over one checkout, scoped to the issue's file."""

    def __init__(
        self,
        registry: PluginRegistry,
        options: dict[str, dict] | None = None,
        max_depth: int = 8,
        max_file_bytes: int = 200_000,
        exclude: list[str] | None = None,
    ):
        self.registry = registry
        self.options = options or {}
        self.max_depth = max_depth
        self.max_file_bytes = max_file_bytes
        self.exclude = exclude or []

    def analyzer_for(self, issue: Issue) -> BaseAnalyzer | None:
        plugin = self.registry.get(issue.source) if issue.source else None
        if plugin is None or not plugin.enabled:
            return None
        return plugin.analyzer

    def findings(self, root: Path, issue: Issue) -> list[Finding] | None:
        """Findings the issue's analyzer reports for the issue's file, or None if it cannot run."""
        analyzer = self.analyzer_for(issue)
        if analyzer is None:
            return None
        browser = FileBrowser(root, max_depth=self.max_depth, max_file_bytes=self.max_file_bytes, exclude=self.exclude)
        try:
            found = analyzer.detect(browser.snapshot(), self.options.get(analyzer.name, {}))
        except Exception as e:
            logger.warning(f"[REANALYZE] {analyzer.name} failed on {issue.file_path}: {e}")
            return None
        return [f for f in found if f.file_path == issue.file_path]

    def check(self, root: Path, issue: Issue, baseline: list[Finding] | None) -> ReAnalysis:
        """Compare the patched file against the findings it had before the fix."""
        if baseline is None:
            return ReAnalysis(skipped=True)
        after = self.findings(root, issue)
        if after is None:
            return ReAnalysis(skipped=True)

        before_counts = Counter(_key(f) for f in baseline)
        after_counts = Counter(_key(f) for f in after)

        # counted by (type, message), not by line
        issue_key = _key(issue)
        if before_counts[issue_key]:
            remains = after_counts[issue_key] >= before_counts[issue_key]
        else:
            remains = any(same_finding(issue, f) for f in after)

        new: list[Finding] = []
        allowance = before_counts.copy()
        for finding in after:
            key = _key(finding)
            if allowance[key] > 0:
                allowance[key] -= 1
            elif key != issue_key:
                new.append(finding)

        result = ReAnalysis(issue_remains=remains, new_findings=new)
        if not result.passed:
            logger.info(
                f"[REANALYZE] {issue.id[:8]}: issue remains={remains}, "
                f"{len(new)} new finding(s) in {issue.file_path}"
            )
        return result
