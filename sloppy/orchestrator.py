"""
SLOPPY Analysis Orchestrator

Fans one scan out to every enabled analyzer and folds what they report
into a single, ordered backlog.

  - one read-only FileSnapshot per scan, shared by all analyzers
  - a thread pool bounded by `concurrency`, joined before merging
  - an analyzer that raises becomes a warning; the others carry on
  - results are collected in registry order, so the merged output does
    not depend on which analyzer finished first
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel

from sloppy.analyzers import BaseAnalyzer
from sloppy.config_loader import AnalysisConfig
from sloppy.plugins import PluginRegistry
from sloppy.snapshot import FileBrowser
from sloppy.state import Finding, ranges_overlap


class AnalysisProgress(BaseModel):
    phase: Literal["analyzer_started", "analyzer_completed", "analyzer_failed", "merge_completed"]
    completed: int
    total: int
    analyzer: str | None = None


ProgressCallback = Callable[[AnalysisProgress], None]


@dataclass
class AnalyzerFailure:
    analyzer: str
    error: str


@dataclass
class AnalysisResult:
    findings: list[Finding] = field(default_factory=list)
    warnings: list[AnalyzerFailure] = field(default_factory=list)
    analyzers_run: list[str] = field(default_factory=list)
    files_scanned: int = 0
    duration_ms: int = 0

    def summary(self) -> dict:
        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for f in self.findings:
            by_type[f.type.value] = by_type.get(f.type.value, 0) + 1
            by_severity[f.severity.value] = by_severity.get(f.severity.value, 0) + 1
        return {
            "total": len(self.findings),
            "files_scanned": self.files_scanned,
            "analyzers": len(self.analyzers_run),
            "failed_analyzers": [w.analyzer for w in self.warnings],
            "by_type": by_type,
            "by_severity": by_severity,
            "duration_ms": self.duration_ms,
        }


# ---------------------------------------------------------------------------
# Merge + ordering
# ---------------------------------------------------------------------------

def _fold(target: Finding, other: Finding) -> None:
    """Fold `other` into `target`; on equal severity `target` keeps its text."""
    end = max(target.last_line, other.last_line)
    start = min(target.line, other.line)
    if other.severity.rank > target.severity.rank:
        target.severity = other.severity
        target.message = other.message
        target.source = other.source
        target.category = other.category
        target.code_excerpt = other.code_excerpt
        target.column = other.column
        target.end_column = other.end_column
    target.line = start
    if end != start:
        target.end_line = end


def merge_findings(findings: list[Finding]) -> list[Finding]:
    """Collapse findings on the same file/type whose line ranges overlap."""
    buckets: dict[tuple[str, str], list[Finding]] = {}
    for finding in findings:
        bucket = buckets.setdefault((finding.file_path, finding.type.value), [])
        target = next(
            (m for m in bucket if ranges_overlap(m.line, m.last_line, finding.line, finding.last_line)),
            None,
        )
        if target is None:
            bucket.append(finding.model_copy())
        else:
            _fold(target, finding)

    merged: list[Finding] = []
    for bucket in buckets.values():
        # a widened range can now reach a later entry
        changed = True
        while changed:
            changed = False
            for i, first in enumerate(bucket):
                for j in range(i + 1, len(bucket)):
                    second = bucket[j]
                    if ranges_overlap(first.line, first.last_line, second.line, second.last_line):
                        _fold(first, second)
                        del bucket[j]
                        changed = True
                        break
                if changed:
                    break
        merged.extend(bucket)
    return merged


def sort_findings(findings: list[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: (f.file_path, f.line, -f.severity.rank))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AnalysisOrchestrator:
    def __init__(self, registry: PluginRegistry, max_depth: int = 8, max_file_bytes: int = 200_000):
        self.registry = registry
        self.max_depth = max_depth
        self.max_file_bytes = max_file_bytes

    def analyze(
        self,
        repository_path: Path,
        config: AnalysisConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AnalysisResult:
        config = config or AnalysisConfig()
        start = time.monotonic()
        browser = FileBrowser(
            repository_path,
            max_depth=self.max_depth,
            max_file_bytes=self.max_file_bytes,
            exclude=config.exclude,
        )
        snapshot = browser.snapshot()
        analyzers = self.registry.list_for(config.types)
        total = len(analyzers)
        result = AnalysisResult(files_scanned=len(snapshot), analyzers_run=[a.name for a in analyzers])

        logger.info(f"[ORCH] Scanning {len(snapshot)} files with {total} analyzers")

        lock = threading.Lock()
        completed = 0

        def report(phase: str, analyzer: str | None) -> None:
            if on_progress is None:
                return
            try:
                on_progress(AnalysisProgress(phase=phase, completed=completed, total=total, analyzer=analyzer))
            except Exception as e:
                logger.warning(f"[ORCH] Progress callback failed: {e}")

        def run_one(analyzer: BaseAnalyzer) -> list[Finding]:
            nonlocal completed
            with lock:
                report("analyzer_started", analyzer.name)
            try:
                found = analyzer.detect(snapshot, config.options.get(analyzer.name, {}))
            except Exception:
                with lock:
                    completed += 1
                    report("analyzer_failed", analyzer.name)
                raise
            with lock:
                completed += 1
                report("analyzer_completed", analyzer.name)
            return found

        per_analyzer: list[list[Finding]] = [[] for _ in analyzers]
        with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, config.concurrency)) as executor:
            futures = {executor.submit(run_one, a): idx for idx, a in enumerate(analyzers)}
            for future in concurrent.futures.as_completed(futures):
                idx = futures[future]
                name = analyzers[idx].name
                try:
                    per_analyzer[idx] = list(future.result())
                except Exception as e:
                    logger.warning(f"[ORCH] Analyzer {name} failed: {e}")
                    result.warnings.append(AnalyzerFailure(analyzer=name, error=str(e)))

        wanted = set(config.types)
        raw = [f for found in per_analyzer for f in found if f.type in wanted]
        findings = sort_findings(merge_findings(raw))

        if config.max_issues and len(findings) > config.max_issues:
            ranked = sorted(range(len(findings)), key=lambda i: -findings[i].severity.rank)
            keep = set(ranked[: config.max_issues])
            findings = [f for i, f in enumerate(findings) if i in keep]

        result.findings = findings
        result.warnings.sort(key=lambda w: result.analyzers_run.index(w.analyzer))
        result.duration_ms = int((time.monotonic() - start) * 1000)
        report("merge_completed", None)

        logger.info(
            f"[ORCH] {len(raw)} raw findings merged into {len(findings)} issues "
            f"({len(result.warnings)} analyzer failures, {result.duration_ms}ms)"
        )
        return result
