import litellm
import pytest

from sloppy.cancellation import AttemptAbandoned, CancelToken
from sloppy.commits import CommitManager
from sloppy.config_loader import load_config
from sloppy.event_bus import EventBus
from sloppy.plugins import default_registry
from sloppy.reanalysis import ReAnalyzer
from sloppy.remediation import Outcome, RemediationLoop
from sloppy.state import Issue, IssueStatus, IssueType, Session, SessionConfig, Severity
from sloppy.verification import Verifier, VerificationResult, VerificationStep
from sloppy.workspace import Workspace

from conftest import ScriptedLLM, fix_todo_script, git, respond, tool_call


class SequenceVerifier:
    """Passes or fails according to a fixed list of outcomes."""

    def __init__(self, outcomes: list[bool]):
        self.outcomes = list(outcomes)
        self.runs = 0

    def run(self, working_dir, cancel=None) -> VerificationResult:
        self.runs += 1
        passed = self.outcomes.pop(0)
        return VerificationResult(steps=[
            VerificationStep(name="test", command="make test", passed=passed, output="" if passed else "1 failed"),
        ])


@pytest.fixture
def harness(store, git_repo):
    def build(script, verifier=None, cancel=None, reanalyze=False, **session_config):
        session = store.create_session(Session(
            repository_path=str(git_repo),
            branch="main",
            config=SessionConfig(**{"max_retries": 0, **session_config}),
        ))
        workspace = Workspace(git_repo, session.id, session.cleaning_branch)
        workspace.create("main")
        issue = store.create_issue(Issue(
            session_id=session.id,
            type=IssueType.STUB,
            severity=Severity.LOW,
            source="stubs",
            file_path="app.py",
            line=2,
            message="TODO: handle overflow",
        ))
        events = []
        event_bus = EventBus()
        event_bus.subscribe(events.append)
        llm = ScriptedLLM(script)
        loop = RemediationLoop(
            store,
            llm,
            workspace,
            CommitManager(store, workspace.path),
            verifier or Verifier(),
            session,
            config=load_config(),
            cancel=cancel,
            event_bus=event_bus,
            reanalyzer=ReAnalyzer(default_registry()) if reanalyze else None,
        )
        return loop, issue, llm, events

    return build


def test_issue_is_fixed_verified_and_committed(harness, store):
    loop, issue, llm, events = harness(fix_todo_script("drop overflow TODO"))
    report = loop.process(issue)

    assert report.outcome == Outcome.RESOLVED, report.error
    stored = store.get_issue(issue.id)
    assert stored.status == IssueStatus.RESOLVED

    workspace = loop.workspace
    assert workspace.is_clean()
    assert "TODO" not in (workspace.path / "app.py").read_text()
    subject = git(workspace.path, "log", "-1", "--format=%s").strip()
    assert subject == "sloppy: [stub] drop overflow TODO"
    body = git(workspace.path, "log", "-1", "--format=%B")
    assert f"Issue-ID: {issue.id}" in body
    assert report.commit.issue_id == issue.id

    assert [e.event_type for e in events] == ["issue.started", "issue.verified", "issue.resolved"]
    assert "TODO: handle overflow" in llm.calls[0][1]["content"]


def test_traversal_attempt_is_reported_and_loop_continues(harness, store):
    script = [respond(tool_call("read_file", call_id="call_0", path="../../etc/passwd"))] + fix_todo_script()
    loop, issue, llm, _ = harness(script)
    report = loop.process(issue)

    assert report.outcome == Outcome.RESOLVED
    tool_reply = llm.calls[1][-1]
    assert tool_reply["role"] == "tool"
    assert tool_reply["content"].startswith("Error:")


def test_verification_retry_property(harness, store):
    # each attempt verifies twice (fix + one correction); the third attempt passes
    script = fix_todo_script() * 5
    verifier = SequenceVerifier([False, False, False, False, True])
    loop, issue, llm, _ = harness(script, verifier=verifier, max_retries=2)

    first = loop.process(issue)
    assert first.outcome == Outcome.FAILED
    assert store.get_issue(issue.id).status == IssueStatus.PENDING
    assert store.get_issue(issue.id).retry_count == 1

    second = loop.process(store.get_issue(issue.id))
    assert second.outcome == Outcome.FAILED
    assert store.get_issue(issue.id).retry_count == 2

    third = loop.process(store.get_issue(issue.id))
    assert third.outcome == Outcome.RESOLVED
    final = store.get_issue(issue.id)
    assert final.status == IssueStatus.RESOLVED
    assert final.retry_count == 2
    assert verifier.runs == 5
    live = [c for c in store.list_commits(issue.session_id) if not c.reverted]
    assert len(live) == 1
    assert live[0].issue_id == issue.id


def test_correction_message_carries_feedback(harness):
    verifier = SequenceVerifier([False, True])
    loop, issue, llm, _ = harness(fix_todo_script() * 2, verifier=verifier)
    assert loop.process(issue).outcome == Outcome.RESOLVED
    correction = llm.calls[3][-1]
    assert correction["role"] == "user"
    assert "rolled back" in correction["content"]
    assert "1 failed" in correction["content"]


def test_retries_exhausted_ends_failed(harness, store):
    loop, issue, _, _ = harness(fix_todo_script() * 2, verifier=SequenceVerifier([False, False]))
    report = loop.process(issue)
    assert report.outcome == Outcome.FAILED
    stored = store.get_issue(issue.id)
    assert stored.status == IssueStatus.FAILED
    assert "Verification failed" in stored.last_error
    assert loop.workspace.is_clean()


def test_skip_issue_leaves_no_commit(harness, store):
    loop, issue, _, _ = harness([respond(tool_call("skip_issue", reason="comment is documentation"))])
    head = loop.workspace.head()
    report = loop.process(issue)
    assert report.outcome == Outcome.SKIPPED
    assert store.get_issue(issue.id).last_error == "comment is documentation"
    assert loop.workspace.head() == head


def test_turn_budget_exhaustion_fails(harness, store):
    loop, issue, llm, _ = harness([respond(content="thinking"), respond(content="still thinking")], max_turns=2)
    report = loop.process(issue)
    assert report.outcome == Outcome.FAILED
    assert "exhausted" in report.error
    assert "use your tools" in llm.calls[1][-1]["content"]


def test_finish_without_changes_fails(harness):
    loop, issue, _, _ = harness([respond(tool_call("finish", summary="nothing to do"))])
    report = loop.process(issue)
    assert report.outcome == Outcome.FAILED
    assert "without changing" in report.error


def test_line_past_end_is_skipped_without_calling_the_model(harness, store):
    loop, issue, llm, _ = harness([])
    issue.line = 99
    store.update_issue(issue)
    report = loop.process(issue)
    assert report.outcome == Outcome.SKIPPED
    assert llm.calls == []


def test_claimed_issue_is_not_processed_twice(harness, store):
    loop, issue, llm, _ = harness([])
    store.claim_issue(issue.id)
    assert loop.process(issue).outcome == Outcome.UNCLAIMED
    assert llm.calls == []


def test_stop_abandons_attempt_and_discards_changes(harness, store):
    token = CancelToken()
    read, write, finish = fix_todo_script()

    def stop_then_finish(messages):
        token.stop()
        return finish

    loop, issue, _, events = harness([read, write, stop_then_finish], cancel=token)
    with pytest.raises(AttemptAbandoned):
        loop.process(issue)

    stored = store.get_issue(issue.id)
    assert stored.status == IssueStatus.PENDING
    assert stored.retry_count == 0
    assert loop.workspace.is_clean()
    assert events[-1].event_type == "issue.abandoned"


def test_transient_model_error_counts_as_failed_attempt(harness, store):
    def unreachable(messages):
        raise litellm.APIConnectionError(message="connection reset", llm_provider="openai", model="gpt-4o")

    loop, issue, _, _ = harness([unreachable], max_retries=1)
    report = loop.process(issue)
    assert report.outcome == Outcome.FAILED
    stored = store.get_issue(issue.id)
    assert stored.status == IssueStatus.PENDING
    assert stored.retry_count == 1


def _patch_app(search, replace, call_id="p"):
    return [
        respond(tool_call("write_patch", call_id=call_id, path="app.py", edits=[{"search": search, "replace": replace}])),
        respond(tool_call("finish", call_id=f"{call_id}-done", summary="patched", commit_message="tidy app")),
    ]


def test_fix_that_leaves_the_finding_gets_a_correction(harness, store):
    script = _patch_app("    return a + b\n", "    return b + a\n") + _patch_app("    # TODO: handle overflow\n", "")
    loop, issue, llm, events = harness(script, reanalyze=True)

    report = loop.process(issue)
    assert report.outcome == Outcome.RESOLVED, report.error
    correction = llm.calls[2][-1]["content"]
    assert "still reported" in correction
    assert "TODO: handle overflow" in correction
    rechecks = [e.payload for e in events if e.event_type == "issue.reanalyzed"]
    assert [r["passed"] for r in rechecks] == [False, True]
    assert len(store.list_commits(issue.session_id)) == 1


def test_fix_that_adds_a_finding_is_rejected(harness, store):
    swap = _patch_app("    # TODO: handle overflow\n", "    # FIXME: handle overflow later\n")
    loop, issue, llm, _ = harness(swap + swap, reanalyze=True)

    report = loop.process(issue)
    assert report.outcome == Outcome.FAILED
    assert "new findings" in llm.calls[2][-1]["content"]
    assert "FIXME: handle overflow later" in llm.calls[2][-1]["content"]
    stored = store.get_issue(issue.id)
    assert stored.status == IssueStatus.FAILED
    assert stored.last_error.startswith("Re-analysis rejected the fix after correction")
    assert store.list_commits(issue.session_id) == []
    assert loop.workspace.is_clean()
