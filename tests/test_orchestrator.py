from sloppy.analyzers import BaseAnalyzer
from sloppy.config_loader import AnalysisConfig
from sloppy.orchestrator import AnalysisOrchestrator, merge_findings, sort_findings
from sloppy.plugins import PluginRegistry, create_plugin, default_registry
from sloppy.state import Finding, IssueType, Severity


class ExplodingAnalyzer(BaseAnalyzer):
    name = "exploding"
    description = "always fails"
    issue_types = (IssueType.BUG,)

    def detect(self, snapshot, options):
        raise RuntimeError("analyzer crashed")


class FixedAnalyzer(BaseAnalyzer):
    description = "reports canned findings"

    def __init__(self, name, findings):
        self.name = name
        self.issue_types = tuple({f.type for f in findings}) or (IssueType.BUG,)
        self._findings = findings

    def detect(self, snapshot, options):
        return [f.model_copy() for f in self._findings]


def _finding(**overrides) -> Finding:
    fields = {"type": IssueType.BUG, "file_path": "a.py", "line": 1, "message": "m"}
    fields.update(overrides)
    return Finding(**fields)


def _write(repo, files):
    for rel, content in files.items():
        (repo / rel).write_text(content)


def test_overlapping_findings_merge_keeping_the_worst():
    merged = merge_findings([
        _finding(line=3, end_line=5, severity=Severity.LOW, message="low"),
        _finding(line=5, end_line=8, severity=Severity.HIGH, message="high"),
        _finding(line=20, message="separate"),
        _finding(line=4, type=IssueType.STUB, message="other type"),
    ])
    bugs = sorted((f for f in merged if f.type == IssueType.BUG), key=lambda f: f.line)
    assert [(f.line, f.last_line, f.severity) for f in bugs] == [(3, 8, Severity.HIGH), (20, 20, Severity.MEDIUM)]
    assert bugs[0].message == "high"
    assert len(merged) == 3


def test_widened_range_absorbs_later_entries():
    merged = merge_findings([
        _finding(line=1, end_line=2),
        _finding(line=4, end_line=5),
        _finding(line=2, end_line=4),
    ])
    assert [(f.line, f.last_line) for f in merged] == [(1, 5)]


def test_sort_is_path_line_then_severity():
    ordered = sort_findings([
        _finding(file_path="b.py", line=1),
        _finding(file_path="a.py", line=9),
        _finding(file_path="a.py", line=2, severity=Severity.LOW),
        _finding(file_path="a.py", line=2, severity=Severity.CRITICAL, type=IssueType.SECURITY),
    ])
    assert [(f.file_path, f.line, f.severity) for f in ordered] == [
        ("a.py", 2, Severity.CRITICAL),
        ("a.py", 2, Severity.LOW),
        ("a.py", 9, Severity.MEDIUM),
        ("b.py", 1, Severity.MEDIUM),
    ]


def test_failing_analyzer_becomes_a_warning(tmp_path):
    _write(tmp_path, {"a.py": "# TODO: later\n"})
    registry = default_registry()
    registry.register(create_plugin(ExplodingAnalyzer()))
    progress = []

    result = AnalysisOrchestrator(registry).analyze(
        tmp_path, AnalysisConfig(types=[IssueType.STUB, IssueType.BUG]), progress.append
    )

    assert [w.analyzer for w in result.warnings] == ["exploding"]
    assert [f.message for f in result.findings] == ["TODO: later"]
    phases = [p.phase for p in progress]
    assert "analyzer_failed" in phases
    assert phases[-1] == "merge_completed"
    assert progress[-1].completed == progress[-1].total


def test_scanning_twice_gives_identical_results(tmp_path):
    _write(tmp_path, {
        "a.py": "# TODO: one\ndef f(x=[]):\n    return eval(x)\n",
        "b.py": "# FIXME: two\n",
    })
    orchestrator = AnalysisOrchestrator(default_registry())
    first = orchestrator.analyze(tmp_path)
    second = orchestrator.analyze(tmp_path)
    assert [f.model_dump() for f in first.findings] == [f.model_dump() for f in second.findings]
    assert first.files_scanned == 2


def test_only_requested_types_survive(tmp_path):
    _write(tmp_path, {"a.py": "x = 1\n"})
    registry = PluginRegistry()
    registry.register(create_plugin(FixedAnalyzer("mixed", [
        _finding(type=IssueType.BUG),
        _finding(type=IssueType.STUB, line=7),
    ])))
    result = AnalysisOrchestrator(registry).analyze(tmp_path, AnalysisConfig(types=[IssueType.STUB]))
    assert [f.type for f in result.findings] == [IssueType.STUB]


def test_max_issues_keeps_most_severe(tmp_path):
    _write(tmp_path, {"a.py": "x = 1\n"})
    registry = PluginRegistry()
    registry.register(create_plugin(FixedAnalyzer("canned", [
        _finding(line=1, severity=Severity.LOW),
        _finding(line=10, severity=Severity.CRITICAL),
        _finding(line=20, severity=Severity.MEDIUM),
    ])))
    result = AnalysisOrchestrator(registry).analyze(tmp_path, AnalysisConfig(max_issues=2))
    assert [f.line for f in result.findings] == [10, 20]
    assert result.summary()["total"] == 2
