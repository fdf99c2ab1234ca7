import pytest

from sloppy.config_loader import ConfigError, detect_test_command, load_config
from sloppy.state import IssueType


def _write_repo_config(repo, text: str):
    (repo / ".sloppy").mkdir(exist_ok=True)
    (repo / ".sloppy" / "config.yaml").write_text(text)


def test_defaults_load_without_repo():
    config = load_config()
    assert config.limits.max_retries == 3
    assert config.commit.prefix == "sloppy:"
    assert set(config.analysis.types) == set(IssueType)
    assert "git push" in config.tools.blocked_patterns


def test_repo_overrides_merge_over_defaults(tmp_path):
    _write_repo_config(tmp_path, "limits:\n  max_retries: 1\nanalysis:\n  types: [stub, bug]\n")
    config = load_config(tmp_path)
    assert config.limits.max_retries == 1
    assert config.limits.max_turns == 12
    assert config.analysis.types == [IssueType.STUB, IssueType.BUG]


def test_caller_overrides_win(tmp_path):
    _write_repo_config(tmp_path, "routing:\n  fixer: repo-model\n")
    config = load_config(tmp_path, overrides={"routing": {"fixer": "cli-model"}})
    assert config.routing.fixer == "cli-model"
    assert config.routing.provider == "anthropic"


def test_invalid_values_raise_config_error(tmp_path):
    _write_repo_config(tmp_path, "limits:\n  max_retries: -1\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_unknown_issue_type_is_rejected(tmp_path):
    _write_repo_config(tmp_path, "analysis:\n  types: [spaghetti]\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_non_mapping_yaml_is_rejected(tmp_path):
    _write_repo_config(tmp_path, "- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_broken_yaml_is_rejected(tmp_path):
    _write_repo_config(tmp_path, "limits: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_session_config_snapshots_and_detects_tests(tmp_path):
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    config = load_config(overrides={"limits": {"max_retries": 2}, "verification": {"lint_command": "ruff ."}})
    snapshot = config.session_config(tmp_path)
    assert snapshot.max_retries == 2
    assert snapshot.test_command == "python -m pytest -q"
    assert snapshot.lint_command == "ruff ."
    assert snapshot.model == config.routing.fixer


def test_explicit_test_command_beats_detection(tmp_path):
    (tmp_path / "package.json").write_text("{}")
    config = load_config(overrides={"verification": {"test_command": "make check"}})
    assert config.session_config(tmp_path).test_command == "make check"


def test_detection_can_be_disabled(tmp_path):
    (tmp_path / "package.json").write_text("{}")
    config = load_config(overrides={"verification": {"auto_detect": False}})
    assert config.session_config(tmp_path).test_command is None


@pytest.mark.parametrize(
    "marker, expected",
    [
        ("Cargo.toml", "cargo test"),
        ("package.json", "npm test"),
        ("go.mod", "go test ./..."),
        ("Makefile", "make test"),
    ],
)
def test_detect_test_command(tmp_path, marker, expected):
    (tmp_path / marker).write_text("")
    assert detect_test_command(tmp_path) == expected


def test_detect_nothing_in_empty_repo(tmp_path):
    assert detect_test_command(tmp_path) is None
