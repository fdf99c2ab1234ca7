from sloppy.agents import AgentContext, recover_json
from sloppy.agents.fixer import EXHAUSTED, FINISHED, FixerAgent, Phase, focus_window, prepare_file_context
from sloppy.cancellation import CancelToken
from sloppy.snapshot import FileBrowser
from sloppy.state import Issue, IssueType, Severity
from sloppy.workspace.tools import ToolExecutor

from conftest import ScriptedLLM, respond, tool_call


def _context(git_repo) -> AgentContext:
    issue = Issue(
        session_id="s1",
        type=IssueType.STUB,
        severity=Severity.LOW,
        file_path="app.py",
        line=2,
        message="TODO: handle overflow",
    )
    return AgentContext(session_id="s1", issue=issue, repo_path=str(git_repo), working_dir=str(git_repo))


def test_recover_json_variants():
    assert recover_json('{"path": "a.py"}') == {"path": "a.py"}
    assert recover_json('```json\n{"path": "a.py"}\n```') == {"path": "a.py"}
    assert recover_json('Sure! {"path": "a.py"} hope that helps') == {"path": "a.py"}
    assert recover_json('{"path": "a.py", "content": "x = 1') == {"path": "a.py", "content": "x = 1"}
    assert recover_json('{"path": "a.py", "edits": [{"search": "x"') == {"path": "a.py", "edits": [{"search": "x"}]}
    assert recover_json("") == {}
    assert recover_json("[1, 2]") is None


def test_focus_window_numbers_lines():
    content = "\n".join(f"line {i}" for i in range(1, 101))
    window = focus_window(content, 50, 52, radius=2)
    assert window.splitlines()[0] == "   48| line 48"
    assert window.splitlines()[-1] == "   54| line 54"


def test_prepare_file_context_adds_compressed_file_for_long_files(tmp_path):
    (tmp_path / "big.py").write_text("".join(f"# comment {i}\nvalue_{i} = {i}\n" for i in range(200)))
    context = prepare_file_context(FileBrowser(tmp_path), "big.py", 100, 100, token_budget=1500)
    labels = list(context)
    assert labels[0] == "big.py (lines around the issue)"
    assert labels[1].startswith("big.py (full file")
    assert len(context[labels[1]]) <= 1500 * 3.2


def test_prepare_file_context_reports_unreadable(tmp_path):
    context = prepare_file_context(FileBrowser(tmp_path), "../secret.py", 1, 1, token_budget=500)
    assert "could not read" in context["../secret.py"]


def test_tool_calls_after_finish_are_ignored(git_repo):
    llm = ScriptedLLM([respond(
        tool_call("finish", call_id="a", summary="done", commit_message="fix it"),
        tool_call("read_file", call_id="b", path="app.py"),
    )])
    agent = FixerAgent(llm)
    conversation = agent.run(agent.start(_context(git_repo)), ToolExecutor(FileBrowser(git_repo)))

    assert conversation.outcome == FINISHED
    assert conversation.phase == Phase.VERIFYING
    assert conversation.commit_message == "fix it"
    tool_messages = [m for m in conversation.messages if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["a", "b"]
    assert tool_messages[1]["content"].startswith("Ignored")


def test_malformed_arguments_become_an_error_reply(git_repo):
    broken = tool_call("read_file", call_id="x")
    broken.arguments = "not json at all"
    llm = ScriptedLLM([respond(broken), respond(tool_call("skip_issue", call_id="y", reason="nothing"))])
    agent = FixerAgent(llm)
    conversation = agent.run(agent.start(_context(git_repo)), ToolExecutor(FileBrowser(git_repo)))

    first_reply = next(m for m in conversation.messages if m["role"] == "tool")
    assert first_reply["content"] == "Error: Invalid JSON in arguments."
    assert conversation.skip_reason == "nothing"


def test_correction_grants_a_fresh_turn_budget(git_repo):
    llm = ScriptedLLM([respond(content="hmm")] * 3)
    agent = FixerAgent(llm, max_turns=1)
    conversation = agent.run(agent.start(_context(git_repo)), ToolExecutor(FileBrowser(git_repo)))
    assert conversation.outcome == EXHAUSTED

    agent.correct(conversation, "tests failed")
    assert conversation.turns_left == 1
    assert conversation.outcome is None
    agent.run(conversation, ToolExecutor(FileBrowser(git_repo)), CancelToken())
    assert conversation.turns == 2
