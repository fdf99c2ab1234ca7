import litellm
import pytest

from sloppy.config_loader import load_config
from sloppy.controller import InfrastructureError, SessionController
from sloppy.event_bus import EventBus
from sloppy.state import InvalidTransitionError, Issue, IssueStatus, IssueType, SessionStatus, Severity
from sloppy.store import IssueFilter
from sloppy.verification import Verifier

from conftest import FakeClock, ScriptedLLM, fix_todo_script, git, respond, tool_call


def stub_only_config(repo, **limits):
    return load_config(repo, overrides={
        "analysis": {"types": ["stub"]},
        "verification": {"auto_detect": False},
        "limits": {"max_retries": 0, **limits},
    })


def make_controller(store, repo, script, clock=None, **limits):
    events = []
    event_bus = EventBus()
    event_bus.subscribe(events.append)
    llm = ScriptedLLM(script)
    kwargs = {"clock": clock} if clock else {}
    controller = SessionController.create_session(
        store,
        repo,
        stub_only_config(repo, **limits),
        llm=llm,
        verifier=Verifier(),
        event_bus=event_bus,
        **kwargs,
    )
    return controller, llm, events


def issues_of(store, session):
    return store.list_issues(IssueFilter(session_id=session.id))


def fix_b_script():
    return [
        respond(tool_call("write_patch", path="b.py", edits=[{"search": "# TODO: tidy\n", "replace": ""}])),
        respond(tool_call("finish", call_id="call_2", summary="Removed TODO", commit_message="drop tidy TODO")),
    ]


def test_full_run_resolves_and_keeps_branch(store, git_repo):
    controller, llm, events = make_controller(store, git_repo, fix_todo_script())
    session = controller.run()

    assert session.status == SessionStatus.COMPLETED
    assert session.counters.total == 1
    assert session.counters.resolved == 1
    assert session.checkpoint.processed == 1

    assert not controller.workspace.worktree_path.exists()
    log = git(git_repo, "log", session.cleaning_branch, "--format=%s")
    assert "sloppy: [stub] drop overflow TODO" in log
    assert "TODO" in (git_repo / "app.py").read_text()
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"

    types = [e.event_type for e in events]
    assert types[0] == "session.started"
    assert "issue.resolved" in types
    assert types[-1] == "session.completed"
    assert store.get_session(session.id).status == SessionStatus.COMPLETED


def test_run_only_once(store, git_repo):
    controller, _, _ = make_controller(store, git_repo, fix_todo_script())
    controller.run()
    with pytest.raises(InvalidTransitionError):
        controller.run()


def test_severity_order_across_files(store, git_repo):
    (git_repo / "b.py").write_text("x = 1\n# FIXME: tidy\n")
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "-q", "-m", "add b")

    first_prompts = []

    def record(messages):
        first_prompts.append(messages[1]["content"])
        return respond(tool_call("skip_issue", reason="later"))

    controller, _, _ = make_controller(store, git_repo, [record, record])
    session = controller.run()

    assert session.counters.skipped == 2
    # FIXME is medium severity, the TODO low
    assert "b.py" in first_prompts[0]
    assert "app.py" in first_prompts[1]


def test_timeout_returns_issue_to_pending(store, git_repo):
    clock = FakeClock()
    read, write, finish = fix_todo_script()

    def slow_write(messages):
        clock.advance(120)
        return write

    controller, _, events = make_controller(store, git_repo, [read, slow_write, finish], clock=clock, timeout_minutes=1)
    session = controller.run()

    assert session.status == SessionStatus.TIMEOUT
    assert session.active_seconds == pytest.approx(120)
    [issue] = issues_of(store, session)
    assert issue.status == IssueStatus.PENDING
    assert issue.retry_count == 0
    assert git(git_repo, "log", session.cleaning_branch, "--format=%s").splitlines() == ["initial"]
    assert events[-1].event_type == "session.timeout"


def test_pause_then_resume(store, git_repo):
    (git_repo / "b.py").write_text("y = 2\n# TODO: tidy\n")
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "-q", "-m", "add b")

    holder = {}
    read, write, finish = fix_todo_script()

    def pause_then_read(messages):
        holder["controller"].pause()
        return read

    controller, _, _ = make_controller(store, git_repo, [pause_then_read, write, finish] + fix_b_script())
    holder["controller"] = controller

    paused = controller.run()
    assert paused.status == SessionStatus.PAUSED
    assert paused.counters.resolved == 1
    assert paused.counters.pending == 1
    assert controller.workspace.exists

    finished = controller.resume()
    assert finished.status == SessionStatus.COMPLETED
    assert finished.counters.resolved == 2
    log = git(git_repo, "log", finished.cleaning_branch, "--format=%s").splitlines()
    assert log[:2] == ["sloppy: [stub] drop tidy TODO", "sloppy: [stub] drop overflow TODO"]


def test_stop_mid_issue(store, git_repo):
    holder = {}
    read, write, finish = fix_todo_script()

    def stop_then_write(messages):
        holder["controller"].stop()
        return write

    controller, _, _ = make_controller(store, git_repo, [read, stop_then_write, finish])
    holder["controller"] = controller
    session = controller.run()

    assert session.status == SessionStatus.STOPPED
    [issue] = issues_of(store, session)
    assert issue.status == IssueStatus.PENDING
    assert not controller.workspace.worktree_path.exists()


def test_stop_before_running(store, git_repo):
    controller, llm, _ = make_controller(store, git_repo, [])
    controller.stop()
    assert controller.session.status == SessionStatus.STOPPED
    assert store.get_session(controller.session.id).status == SessionStatus.STOPPED
    assert llm.calls == []


def test_not_a_git_repo_fails_the_session(store, tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "a.py").write_text("# TODO: x\n")
    controller, _, events = make_controller(store, plain, [])

    with pytest.raises(InfrastructureError):
        controller.run()
    session = store.get_session(controller.session.id)
    assert session.status == SessionStatus.FAILED
    assert "Not a git checkout" in session.error
    assert events[-1].event_type == "session.failed"


def test_resume_recovers_interrupted_issue(store, git_repo):
    controller, _, _ = make_controller(store, git_repo, fix_todo_script())
    session = controller.session
    store.create_issue(Issue(
        session_id=session.id,
        type=IssueType.STUB,
        severity=Severity.LOW,
        file_path="app.py",
        line=2,
        message="TODO: handle overflow",
        status=IssueStatus.IN_PROGRESS,
    ))
    # simulate a crash: the session was left RUNNING
    session.transition(SessionStatus.RUNNING)
    store.update_session(session)

    result = controller.resume()
    assert result.status == SessionStatus.COMPLETED
    [issue] = issues_of(store, result)
    assert issue.status == IssueStatus.RESOLVED


def test_load_unknown_session(store):
    with pytest.raises(InfrastructureError):
        SessionController.load(store, "does-not-exist")


def test_rescan_merges_into_existing_issue(store, git_repo):
    controller, _, _ = make_controller(store, git_repo, [])
    controller._start()
    controller._prepare_workspace()
    controller._scan()
    controller._scan()
    issues = issues_of(store, controller.session)
    assert len(issues) == 1
    assert issues[0].line == 2


def test_model_rejection_fails_the_session(store, git_repo):
    def rejected(messages):
        raise litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt-4o")

    controller, _, events = make_controller(store, git_repo, [rejected])
    with pytest.raises(InfrastructureError, match="AuthenticationError"):
        controller.run()

    session = store.get_session(controller.session.id)
    assert session.status == SessionStatus.FAILED
    assert "bad key" in session.error
    [issue] = issues_of(store, session)
    assert issue.status == IssueStatus.PENDING
    assert issue.retry_count == 0
    assert events[-1].event_type == "session.failed"
