from pathlib import Path

from sloppy.analyzers import builtin_analyzers, is_test_file
from sloppy.analyzers.bugs import BugAnalyzer
from sloppy.analyzers.dead_code import DeadCodeAnalyzer
from sloppy.analyzers.duplicates import DuplicateAnalyzer
from sloppy.analyzers.lint import LintAnalyzer
from sloppy.analyzers.missing_tests import MissingTestAnalyzer
from sloppy.analyzers.security import SecurityAnalyzer
from sloppy.analyzers.stubs import StubAnalyzer
from sloppy.analyzers.type_errors import TypeErrorAnalyzer
from sloppy.snapshot import FileBrowser
from sloppy.state import IssueType, Severity


def _snapshot(root: Path, files: dict[str, str]):
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return FileBrowser(root).snapshot()


def test_builtin_names_are_unique():
    names = [a.name for a in builtin_analyzers()]
    assert len(names) == len(set(names))
    covered = {t for a in builtin_analyzers() for t in a.issue_types}
    assert covered == set(IssueType)


def test_stubs_find_markers_and_placeholders(tmp_path):
    snap = _snapshot(tmp_path, {
        "mod.py": (
            "# TODO: wire up retries\n"
            "def later():\n"
            "    raise NotImplementedError\n"
            "\n"
            "def empty():\n"
            "    pass\n"
        ),
    })
    findings = StubAnalyzer().detect(snap, {})
    by_line = {f.line: f for f in findings}
    assert by_line[1].message == "TODO: wire up retries"
    assert by_line[1].severity == Severity.LOW
    assert by_line[3].severity == Severity.HIGH
    assert "empty" in by_line[5].message
    assert all(f.source == "stubs" for f in findings)


def test_bugs_find_python_pitfalls(tmp_path):
    snap = _snapshot(tmp_path, {
        "bad.py": (
            "def f(items=[]):\n"
            "    try:\n"
            "        return items\n"
            "    except Exception:\n"
            "        pass\n"
        ),
    })
    messages = [f.message for f in BugAnalyzer().detect(snap, {})]
    assert any("Mutable default" in m for m in messages)
    assert any("swallows" in m for m in messages)


def test_bugs_skip_unparseable_python(tmp_path):
    snap = _snapshot(tmp_path, {"broken.py": "def (:\n"})
    assert BugAnalyzer().detect(snap, {}) == []


def test_empty_js_catch_is_a_bug(tmp_path):
    snap = _snapshot(tmp_path, {"a.js": "try { go() } catch (e) {}\n"})
    findings = BugAnalyzer().detect(snap, {})
    assert [f.line for f in findings] == [1]


def test_security_flags_secrets_and_eval(tmp_path):
    snap = _snapshot(tmp_path, {
        "settings.py": 'api_key = "abcdefghijklmnop1234"\nresult = eval(user_input)\n',
    })
    findings = SecurityAnalyzer().detect(snap, {})
    assert {f.line for f in findings} == {1, 2}
    assert all(f.type == IssueType.SECURITY for f in findings)


def test_lint_and_types(tmp_path):
    snap = _snapshot(tmp_path, {
        "a.py": "try:\n    x = 1\nexcept:\n    x = 2\ny = x  # type: ignore\n",
    })
    lint = LintAnalyzer().detect(snap, {})
    types = TypeErrorAnalyzer().detect(snap, {})
    assert any(f.line == 3 for f in lint)
    assert [f.line for f in types] == [5]


def test_dead_code_after_return_and_unused_private(tmp_path):
    snap = _snapshot(tmp_path, {
        "a.py": (
            "def g():\n"
            "    return 1\n"
            "    print('never')\n"
            "\n"
            "def _orphan():\n"
            "    return 2\n"
        ),
    })
    findings = DeadCodeAnalyzer().detect(snap, {})
    messages = {f.line: f.message for f in findings}
    assert "Unreachable" in messages[3]
    assert "_orphan" in messages[5]


def test_duplicates_across_files(tmp_path):
    block = "".join(f"    total = total + value_{i}\n" for i in range(6))
    snap = _snapshot(tmp_path, {"a.py": block, "b.py": block})
    findings = DuplicateAnalyzer().detect(snap, {})
    assert len(findings) == 1
    assert findings[0].file_path == "b.py"
    assert "a.py:1" in findings[0].message


def test_missing_tests_respects_existing_tests(tmp_path):
    snap = _snapshot(tmp_path, {
        "billing.py": "def charge():\n    return 1\n",
        "shipping.py": "def ship():\n    return 2\n",
        "tests/test_billing.py": "from billing import charge\n",
    })
    findings = MissingTestAnalyzer().detect(snap, {})
    assert [f.file_path for f in findings] == ["shipping.py"]


def test_is_test_file():
    assert is_test_file("tests/helpers.py")
    assert is_test_file("src/app.spec.ts")
    assert is_test_file("pkg/thing_test.go")
    assert not is_test_file("src/contest.py")
