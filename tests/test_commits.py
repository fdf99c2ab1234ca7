import pytest

from sloppy.commits import (
    FIX_TRAILER,
    CommitManager,
    CommitOptions,
    RevertOptions,
    format_commit_message,
    parse_diff_to_file_changes,
    parse_numstat,
)
from sloppy.state import ChangeType, Session
from sloppy.store import StoreError

from conftest import git


@pytest.fixture
def session(store, git_repo):
    return store.create_session(Session(repository_path=str(git_repo), branch="main"))


@pytest.fixture
def manager(store, git_repo):
    return CommitManager(store, git_repo, author_name="Sloppy Bot", author_email="bot@example.com")


def _change_and_commit(manager, session, git_repo, filename, content, message):
    (git_repo / filename).write_text(content)
    return manager.commit(CommitOptions(session_id=session.id, message=message))


def test_commit_records_hash_diff_and_author(manager, session, git_repo, store):
    result = _change_and_commit(manager, session, git_repo, "util.py", "def two():\n    return 2\n", "add util")
    assert result.success, result.error

    commit = result.commit
    assert commit.hash == git(git_repo, "rev-parse", "HEAD").strip()
    assert commit.author == "Sloppy Bot"
    assert commit.author_email == "bot@example.com"
    assert commit.lines_added == 2
    assert commit.files_changed[0].change_type == ChangeType.ADDED
    assert store.list_commits(session.id)[0].id == commit.id


def test_unrecorded_commit_is_rolled_back(manager, session, git_repo, store, monkeypatch):
    head = git(git_repo, "rev-parse", "HEAD").strip()

    def broken(commit):
        raise StoreError("database is locked")

    monkeypatch.setattr(store, "create_commit", broken)
    result = _change_and_commit(manager, session, git_repo, "util.py", "X = 1\n", "add util")

    assert not result.success
    assert "database is locked" in result.error
    assert git(git_repo, "rev-parse", "HEAD").strip() == head
    assert store.list_commits(session.id) == []
    assert "util.py" in git(git_repo, "diff", "--cached", "--name-only")


def test_nothing_to_commit(manager, session):
    result = manager.commit(CommitOptions(session_id=session.id, message="noop"))
    assert not result.success
    assert result.error == "Nothing to commit"


def test_revert_creates_a_revert_commit(manager, session, git_repo, store):
    commit = _change_and_commit(manager, session, git_repo, "app.py", "def add(a, b):\n    return a + b\n", "drop TODO").commit

    result = manager.revert(RevertOptions(commit_id=commit.hash[:8], reason="the TODO was load-bearing"))
    assert result.success, result.error
    assert "TODO" in (git_repo / "app.py").read_text()
    assert git(git_repo, "rev-parse", "HEAD").strip() == result.revert_hash

    stored = store.get_commit(commit.id)
    assert stored.reverted
    assert stored.revert_reason == "the TODO was load-bearing"
    assert stored.revert_hash == result.revert_hash


def test_revert_needs_reason_and_only_happens_once(manager, session, git_repo):
    commit = _change_and_commit(manager, session, git_repo, "b.py", "B = 1\n", "add b").commit
    assert manager.revert(RevertOptions(commit_id=commit.id, reason="  ")).error == "A revert reason is required"
    assert manager.revert(RevertOptions(commit_id=commit.id, reason="no longer wanted")).success
    again = manager.revert(RevertOptions(commit_id=commit.id, reason="again"))
    assert not again.success
    assert "already reverted" in again.error


def test_revert_refuses_dirty_tree_and_unknown_commit(manager, session, git_repo):
    commit = _change_and_commit(manager, session, git_repo, "c.py", "C = 1\n", "add c").commit
    (git_repo / "app.py").write_text("dirty\n")
    assert "uncommitted" in manager.revert(RevertOptions(commit_id=commit.id, reason="r")).error
    assert "not found" in manager.revert(RevertOptions(commit_id="missing", reason="r")).error


def test_hard_reset_discards_later_commits(manager, session, git_repo, store):
    base = git(git_repo, "rev-parse", "HEAD").strip()
    first = _change_and_commit(manager, session, git_repo, "one.py", "ONE = 1\n", "one").commit
    second = _change_and_commit(manager, session, git_repo, "two.py", "TWO = 2\n", "two").commit

    result = manager.revert(RevertOptions(commit_id=first.id, reason="bad idea", create_revert_commit=False))
    assert result.success, result.error
    assert result.reverted_ids == [first.id, second.id]
    assert git(git_repo, "rev-parse", "HEAD").strip() == base
    assert not (git_repo / "two.py").exists()

    later = store.get_commit(second.id)
    assert later.reverted
    assert later.revert_hash is None
    assert "bad idea" in later.revert_reason


def test_format_commit_message_subject_body_trailer():
    message = format_commit_message("sloppy:", "stub", "remove   stale TODO", body="Details here.", issue_id="abc")
    subject, body, trailer = message.split("\n\n")
    assert subject == "sloppy: [stub] remove stale TODO"
    assert body == "Details here."
    assert trailer == f"Issue-ID: abc\n{FIX_TRAILER}"


def test_long_subject_is_truncated():
    subject = format_commit_message("sloppy:", "bug", "x" * 200).split("\n\n")[0]
    assert len(subject) <= 72
    assert subject.endswith("...")


def test_parse_diff_counts_and_renames():
    diff = (
        "diff --git a/old.py b/new.py\n"
        "similarity index 90%\n"
        "rename from old.py\n"
        "rename to new.py\n"
        "--- a/old.py\n"
        "+++ b/new.py\n"
        "@@ -1,2 +1,2 @@\n"
        "-a = 1\n"
        "+a = 2\n"
        " b = 3\n"
        "diff --git a/gone.py b/gone.py\n"
        "deleted file mode 100644\n"
        "--- a/gone.py\n"
        "+++ /dev/null\n"
        "@@ -1 +0,0 @@\n"
        "-x\n"
    )
    renamed, deleted = parse_diff_to_file_changes(diff)
    assert (renamed.change_type, renamed.old_path, renamed.path) == (ChangeType.RENAMED, "old.py", "new.py")
    assert (renamed.lines_added, renamed.lines_removed) == (1, 1)
    assert deleted.change_type == ChangeType.DELETED
    assert deleted.lines_removed == 1


def test_parse_numstat_handles_binary_and_renames():
    output = "3\t1\tapp.py\n-\t-\tlogo.png\n0\t0\tsrc/{old => new}/mod.py\n2\t0\ta.txt => b.txt\n"
    assert parse_numstat(output) == {
        "app.py": (3, 1),
        "logo.png": (0, 0),
        "src/new/mod.py": (0, 0),
        "b.txt": (2, 0),
    }
