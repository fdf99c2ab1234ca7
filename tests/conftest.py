import json
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from sloppy.router import RouterResponse, ToolCall
from sloppy.store.memory import MemoryStore


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository on `main` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "app.py").write_text(
        "def add(a, b):\n"
        "    # TODO: handle overflow\n"
        "    return a + b\n"
    )
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def store():
    return MemoryStore()


def tool_call(name: str, call_id: str = "call_1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


def respond(*calls: ToolCall, content: str = "") -> RouterResponse:
    return RouterResponse(content=content, tool_calls=list(calls), model="fake", tokens_used=10)


class ScriptedLLM:
    """Replays canned responses; each entry is a RouterResponse or a callable producing one."""

    def __init__(self, script: list[RouterResponse | Callable[[list[dict]], RouterResponse]]):
        self.script = list(script)
        self.calls: list[list[dict]] = []

    def complete(self, messages, tools=None, **options) -> RouterResponse:
        self.calls.append([dict(m) for m in messages])
        if not self.script:
            raise AssertionError("ScriptedLLM ran out of responses")
        step = self.script.pop(0)
        return step(messages) if callable(step) else step


def fix_todo_script(commit_message: str = "drop overflow TODO") -> list[RouterResponse]:
    """Fixer turns that remove the TODO line from app.py and finish."""
    return [
        respond(tool_call("read_file", path="app.py")),
        respond(tool_call(
            "write_patch",
            call_id="call_2",
            path="app.py",
            edits=[{"search": "    # TODO: handle overflow\n", "replace": ""}],
        )),
        respond(tool_call("finish", call_id="call_3", summary="Removed stale TODO", commit_message=commit_message)),
    ]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
