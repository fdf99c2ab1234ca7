import json

from sloppy.audit_logger import AuditLogger
from sloppy.event_bus import EventBus, SloppyEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[SloppyEvent] = []

    def dummy_subscriber(event: SloppyEvent):
        received_events.append(event)

    test_bus.subscribe(dummy_subscriber)

    test_bus.emit(
        event_type="issue.resolved",
        source="remediation",
        payload={"issue_id": "i-1"},
        session_id="s-1",
    )

    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "issue.resolved"
    assert event.source == "remediation"
    assert event.session_id == "s-1"
    assert event.payload == {"issue_id": "i-1"}

    # Verify auto-generated fields
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_broken_subscriber_does_not_block_others():
    test_bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    test_bus.subscribe(broken)
    test_bus.subscribe(received.append)
    test_bus.emit("scan.merge_completed", "controller")
    assert len(received) == 1

    test_bus.unsubscribe(received.append)
    test_bus.emit("scan.merge_completed", "controller")
    assert len(received) == 1


def test_audit_logger_writes_only_its_session(tmp_path):
    test_bus = EventBus()
    log_file = tmp_path / "logs" / "s-1.jsonl"
    audit = AuditLogger(log_file, batch_size=2, session_id="s-1").attach(test_bus)

    test_bus.emit("session.running", "controller", session_id="s-1")
    test_bus.emit("session.running", "controller", session_id="other")
    test_bus.emit("issue.started", "remediation", {"issue_id": "x"}, session_id="s-1")
    test_bus.emit("session.completed", "controller", session_id="s-1")
    audit.detach(test_bus)

    records = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert [r["event_type"] for r in records] == ["session.running", "issue.started", "session.completed"]
    assert records[1]["payload"] == {"issue_id": "x"}
